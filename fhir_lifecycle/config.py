"""Runtime configuration for entry points.

The client and runner take their settings as constructor arguments; only the
e2e runner and the sandbox server read the environment, through
`load_settings()`.

Environment variables:
 - FHIR_BASE_URI: scheme and host of the FHIR server (default http://localhost:8080).
 - FHIR_BASE_PATH: path prefix of the FHIR endpoint (default /fhir).
 - FHIR_TIMEOUT: request timeout in seconds (default 10).
 - SANDBOX_PORT: port for `python -m fhir_lifecycle.sandbox` (default 8080).
"""
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_BASE_URI = "http://localhost:8080"
DEFAULT_BASE_PATH = "/fhir"


class Settings(BaseModel):
    base_uri: str = Field(DEFAULT_BASE_URI, description="Scheme and host of the FHIR server.")
    base_path: str = Field(DEFAULT_BASE_PATH, description="Path prefix of the FHIR endpoint.")
    timeout: float = Field(10.0, gt=0, description="Request timeout in seconds.")
    sandbox_port: int = Field(8080, description="Port the sandbox server listens on.")


def load_settings() -> Settings:
    """Build Settings from the environment, loading a .env file first if present."""
    load_dotenv()
    return Settings(
        base_uri=os.getenv("FHIR_BASE_URI", DEFAULT_BASE_URI),
        base_path=os.getenv("FHIR_BASE_PATH", DEFAULT_BASE_PATH),
        timeout=os.getenv("FHIR_TIMEOUT", "10"),
        sandbox_port=os.getenv("SANDBOX_PORT", "8080"),
    )
