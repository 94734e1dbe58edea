"""Pydantic models shared by the client, the runner and the sandbox server.

Defines the resource descriptor, JSON-Patch operation, operation result and
fixture bookkeeping types, plus the OperationOutcome shape the sandbox uses
for its error bodies.
"""
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

# Splits "name[0].text" or "name.0.text" into ["name", "0", "text"]
_PATH_TOKEN = re.compile(r"[^.\[\]]+")


class ResourceDescriptor(BaseModel):
    """
    Addressing information for one FHIR resource type.

    resource_type: FHIR type name (e.g., 'Condition').
    collection_path: path of the type's collection endpoint (e.g., '/Condition').
    """
    resource_type: str = Field(..., description="FHIR resource type name.")
    collection_path: str = Field(..., description="Collection endpoint path, with leading slash.")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def for_type(cls, resource_type: str) -> "ResourceDescriptor":
        return cls(resource_type=resource_type, collection_path=f"/{resource_type}")


class PatchOperation(BaseModel):
    """A single JSON-Patch (RFC 6902) operation."""
    op: Literal["replace"] = Field("replace", description="Patch verb; only 'replace' is emitted.")
    path: str = Field(..., description="JSON Pointer to the target element.")
    value: Union[str, int, float, bool, None] = Field(..., description="Scalar replacement value.")

    model_config = ConfigDict(frozen=True)


class OperationResult(BaseModel):
    """
    Normalized outcome of one HTTP call.

    status_code: HTTP status returned by the server.
    text: raw response body.
    body: parsed JSON body, or None when the response carried no JSON.
    elapsed_millis: wall-clock duration of the request.
    method / url: the request that produced this result.
    """
    status_code: int = Field(..., description="HTTP status code.")
    text: str = Field("", description="Raw response body text.")
    body: Optional[Any] = Field(None, description="Parsed JSON body, if any.")
    elapsed_millis: float = Field(0.0, description="Request duration in milliseconds.")
    method: str = Field("", description="HTTP method of the request.")
    url: str = Field("", description="Full URL of the request.")

    model_config = ConfigDict(frozen=True)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def lookup(self, path: str, default: Any = None) -> Any:
        """
        Resolve a dotted path against the parsed body.

        Accepts 'code.text', 'meta.versionId' and list indexes in either
        'name[0].text' or 'name.0.text' form. Returns `default` when any
        segment is missing.
        """
        node = self.body
        for token in _PATH_TOKEN.findall(path):
            if isinstance(node, dict) and token in node:
                node = node[token]
            elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
                node = node[int(token)]
            else:
                return default
        return node


class FixtureState(BaseModel):
    """State carried between the steps of one fixture run."""
    resource_id: Optional[str] = Field(None, description="Server-assigned id of the resource under test.")
    version_tag: Optional[str] = Field(None, description="meta.versionId captured by a read step.")

    def has(self, name: str) -> bool:
        """True when the named field is set to a non-empty value."""
        value = getattr(self, name, None)
        return value is not None and value != ""


class StepStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepOutcome(BaseModel):
    """Recorded result of one fixture step."""
    name: str = Field(..., description="Step name as declared.")
    status: StepStatus = Field(..., description="passed, failed or skipped.")
    status_code: Optional[int] = Field(None, description="HTTP status, if a request was made.")
    elapsed_millis: float = Field(0.0, description="Time spent in the step.")
    message: str = Field("", description="Why the step failed or was skipped.")
    result: Optional[OperationResult] = Field(None, description="Client result, if a request was made.")

    model_config = ConfigDict(frozen=True)


class RunSummary(BaseModel):
    """Ordered outcomes of one fixture run, with counts."""
    name: str
    outcomes: List[StepOutcome] = Field(default_factory=list)

    def _count(self, status: StepStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @computed_field
    @property
    def passed(self) -> int:
        return self._count(StepStatus.PASSED)

    @computed_field
    @property
    def failed(self) -> int:
        return self._count(StepStatus.FAILED)

    @computed_field
    @property
    def skipped(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.skipped == 0


class OperationOutcomeIssue(BaseModel):
    """
    Represents a single FHIR OperationOutcome issue.

    severity: issue severity (e.g., 'error', 'information').
    code: FHIR issue type code (e.g., 'not-found').
    diagnostics: human-readable explanation of the issue.
    """
    severity: str = Field("error", description="Issue severity (e.g., 'error', 'information').")
    code: str = Field("processing", description="FHIR issue type code (e.g., 'not-found').")
    diagnostics: Optional[str] = Field(None, description="Human-readable explanation of the issue.")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "severity": "error",
                "code": "not-found",
                "diagnostics": "Resource Patient/123 is not known",
            }
        }
    )


class OperationOutcome(BaseModel):
    """FHIR OperationOutcome resource, as served by the sandbox."""
    resourceType: Literal["OperationOutcome"] = "OperationOutcome"
    issue: List[OperationOutcomeIssue] = Field(default_factory=list)

    def as_resource(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
