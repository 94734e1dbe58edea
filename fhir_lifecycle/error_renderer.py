"""Render FHIR OperationOutcome error bodies from code-based templates.

Used by the sandbox server so every error it returns is a well-formed
OperationOutcome with a consistent message.
"""
from typing import Any, Dict, Tuple

from fhir_lifecycle.schemas import OperationOutcome, OperationOutcomeIssue

# Unified code-based error definitions: message template, FHIR issue code, HTTP status
CODE_ERROR_DEFS = {
    "not_found": {
        "template": "Resource {resource_type}/{resource_id} is not known.",
        "issue_code": "not-found",
        "status_code": 404,
    },
    "gone": {
        "template": "Resource {resource_type}/{resource_id} has been deleted.",
        "issue_code": "deleted",
        "status_code": 410,
    },
    "version_not_found": {
        "template": "Version '{version_id}' of {resource_type}/{resource_id} is not known.",
        "issue_code": "not-found",
        "status_code": 404,
    },
    "invalid_type": {
        "template": "Resource type '{resource_type}' is not supported. Supported types: {supported_types}.",
        "issue_code": "not-supported",
        "status_code": 404,
    },
    "invalid_body": {
        "template": "Request body is not a valid {resource_type} resource: {diagnostics}",
        "issue_code": "invalid",
        "status_code": 400,
    },
    "invalid_patch": {
        "template": "JSON Patch could not be applied to {resource_type}/{resource_id}: {diagnostics}",
        "issue_code": "processing",
        "status_code": 400,
    },
    "invalid_param": {
        "template": "Unknown search parameter(s) for '{resource_type}': {diagnostics}. Supported: {supported_params}.",
        "issue_code": "not-supported",
        "status_code": 400,
    },
    "unknown_route": {
        "template": "{diagnostics}",
        "issue_code": "not-found",
        "status_code": 404,
    },
    "method_not_allowed": {
        "template": "{diagnostics}",
        "issue_code": "not-supported",
        "status_code": 405,
    },
    # Add more error types here as needed
}


class _Placeholders(dict):
    def __missing__(self, key):
        return f"<missing {key}>"


def render_error(error_type: str, error_data: Dict[str, Any]) -> Tuple[OperationOutcome, int]:
    """
    Render an OperationOutcome for `error_type`, with best-effort context.

    Args:
        error_type: key of CODE_ERROR_DEFS, e.g. 'not_found', 'invalid_patch'.
        error_data: template fields; missing fields render as '<missing name>'.

    Returns:
        (OperationOutcome, HTTP status code). Unknown error types fall back to
        a 500 'exception' issue carrying `diagnostics`.
    """
    error_def = CODE_ERROR_DEFS.get(error_type)
    if error_def is None:
        diagnostics = error_data.get("diagnostics", "An error occurred.")
        issue = OperationOutcomeIssue(severity="error", code="exception", diagnostics=diagnostics)
        return OperationOutcome(issue=[issue]), error_data.get("status_code", 500)

    format_data = _Placeholders({k: v for k, v in error_data.items() if v is not None})
    diagnostics = error_def["template"].format_map(format_data)
    issue = OperationOutcomeIssue(severity="error", code=error_def["issue_code"], diagnostics=diagnostics)
    return OperationOutcome(issue=[issue]), error_def["status_code"]


def render_information(diagnostics: str) -> OperationOutcome:
    """Single 'informational' issue, as returned by successful delete and $validate."""
    return OperationOutcome(issue=[
        OperationOutcomeIssue(severity="information", code="informational", diagnostics=diagnostics)
    ])
