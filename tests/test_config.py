import pytest
from pydantic import ValidationError

from fhir_lifecycle.client import ResourceClient, SystemClient
from fhir_lifecycle.config import DEFAULT_BASE_PATH, DEFAULT_BASE_URI, Settings, load_settings


@pytest.fixture(autouse=True)
def no_dotenv(mocker, monkeypatch):
    mocker.patch("fhir_lifecycle.config.load_dotenv")
    for name in ("FHIR_BASE_URI", "FHIR_BASE_PATH", "FHIR_TIMEOUT", "SANDBOX_PORT"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = load_settings()
    assert settings.base_uri == DEFAULT_BASE_URI
    assert settings.base_path == DEFAULT_BASE_PATH
    assert settings.timeout == 10.0
    assert settings.sandbox_port == 8080


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("FHIR_BASE_URI", "https://hapi.fhir.org")
    monkeypatch.setenv("FHIR_BASE_PATH", "/baseR4")
    monkeypatch.setenv("FHIR_TIMEOUT", "2.5")
    monkeypatch.setenv("SANDBOX_PORT", "9090")
    settings = load_settings()
    assert settings.base_uri == "https://hapi.fhir.org"
    assert settings.base_path == "/baseR4"
    assert settings.timeout == 2.5
    assert settings.sandbox_port == 9090


def test_invalid_timeout(monkeypatch):
    monkeypatch.setenv("FHIR_TIMEOUT", "0")
    with pytest.raises(ValidationError):
        load_settings()


def test_clients_from_settings():
    settings = Settings(base_uri="https://hapi.fhir.org", base_path="/baseR4", timeout=3)
    patients = ResourceClient.from_settings(settings, "Patient")
    assert patients.url_for("/Patient/1") == "https://hapi.fhir.org/baseR4/Patient/1"
    assert patients.timeout == 3
    assert SystemClient.from_settings(settings).url_for() == "https://hapi.fhir.org/baseR4"
