"""
In-memory FHIR sandbox server.

A small Flask application implementing the parts of the FHIR REST API that the
lifecycle fixtures exercise, so the suite can run without a real server:
 - POST/GET/PUT/PATCH/DELETE on /{type} and /{type}/{id} for Patient and Condition
 - GET /{type}/{id}/_history/{version}
 - GET /{type}?subject=|name=|gender=|_id=  (searchset Bundle)
 - POST /{type}/$validate
 - POST /  (transaction Bundle of POST/PUT entries)
 - GET /metadata

Every error is a FHIR OperationOutcome rendered by error_renderer.

Run it with `python -m fhir_lifecycle.sandbox`; FHIR_BASE_PATH and SANDBOX_PORT
come from the environment (see fhir_lifecycle.config).
"""
import copy
import itertools
import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, Response, current_app, request

from fhir_lifecycle.config import load_settings
from fhir_lifecycle.error_renderer import render_error, render_information
from fhir_lifecycle.schemas import OperationOutcome

FHIR_JSON = "application/fhir+json"
SUPPORTED_TYPES = ("Patient", "Condition")
SEARCH_PARAMS = {
    "Patient": ("_id", "name", "gender"),
    "Condition": ("_id", "subject", "patient"),
}
PATIENT_GENDERS = {"male", "female", "other", "unknown"}


class PatchError(ValueError):
    """A JSON-Patch document is malformed or cannot be applied."""


def _parse_pointer(pointer: str) -> List[str]:
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        raise PatchError(f"Invalid JSON Pointer '{pointer}'")
    return [token.replace("~1", "/").replace("~0", "~") for token in pointer[1:].split("/")]


def _list_index(container: list, token: str, allow_end: bool) -> int:
    if token == "-" and allow_end:
        return len(container)
    if not token.isdigit():
        raise PatchError(f"Invalid array index '{token}'")
    index = int(token)
    limit = len(container) + (1 if allow_end else 0)
    if index >= limit:
        raise PatchError(f"Array index {index} out of range")
    return index


def apply_patch(document: Dict[str, Any], operations: Any) -> Dict[str, Any]:
    """
    Apply RFC 6902 'add', 'replace' and 'remove' operations to a copy of `document`.

    Raises:
        PatchError: when the patch document is malformed or a path does not resolve.
    """
    if not isinstance(operations, list) or not operations:
        raise PatchError("Patch body must be a non-empty JSON array")
    result = copy.deepcopy(document)
    for operation in operations:
        if not isinstance(operation, dict) or "op" not in operation or "path" not in operation:
            raise PatchError(f"Malformed patch operation: {operation!r}")
        op = operation["op"]
        if op not in ("add", "replace", "remove"):
            raise PatchError(f"Unsupported patch operation '{op}'")
        if op != "remove" and "value" not in operation:
            raise PatchError(f"Operation '{op}' requires a value")
        if not isinstance(operation["path"], str):
            raise PatchError(f"Path must be a string, got {operation['path']!r}")
        tokens = _parse_pointer(operation["path"])
        if not tokens:
            raise PatchError("Replacing the whole resource is not supported")

        parent: Any = result
        for token in tokens[:-1]:
            if isinstance(parent, dict) and token in parent:
                parent = parent[token]
            elif isinstance(parent, list):
                parent = parent[_list_index(parent, token, allow_end=False)]
            else:
                raise PatchError(f"Path '{operation['path']}' does not exist")

        last = tokens[-1]
        if isinstance(parent, dict):
            if op in ("replace", "remove") and last not in parent:
                raise PatchError(f"Path '{operation['path']}' does not exist")
            if op == "remove":
                del parent[last]
            else:
                parent[last] = copy.deepcopy(operation["value"])
        elif isinstance(parent, list):
            index = _list_index(parent, last, allow_end=(op == "add"))
            if op == "add":
                parent.insert(index, copy.deepcopy(operation["value"]))
            elif op == "replace":
                parent[index] = copy.deepcopy(operation["value"])
            else:
                del parent[index]
        else:
            raise PatchError(f"Path '{operation['path']}' does not exist")
    return result


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class ResourceStore:
    """
    Versioned in-memory storage keyed by (resource type, id).

    Every write appends a new version; delete marks the resource gone while
    its history stays readable.
    """
    def __init__(self):
        self._history: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self._deleted = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _write(self, resource_type: str, resource_id: str, resource: Dict[str, Any]) -> Dict[str, Any]:
        versions = self._history.setdefault((resource_type, resource_id), [])
        stored = copy.deepcopy(resource)
        stored["resourceType"] = resource_type
        stored["id"] = resource_id
        stored["meta"] = {"versionId": str(len(versions) + 1), "lastUpdated": _now()}
        versions.append(stored)
        self._deleted.discard((resource_type, resource_id))
        return copy.deepcopy(stored)

    def create(self, resource_type: str, resource: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            resource_id = str(next(self._ids))
            while (resource_type, resource_id) in self._history:
                resource_id = str(next(self._ids))
            return self._write(resource_type, resource_id, resource)

    def update(self, resource_type: str, resource_id: str, resource: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Store a new version; returns (stored resource, created) where created means no prior history."""
        with self._lock:
            created = (resource_type, resource_id) not in self._history
            return self._write(resource_type, resource_id, resource), created

    def state(self, resource_type: str, resource_id: str) -> str:
        """'live', 'deleted' or 'missing'."""
        with self._lock:
            return self._state(resource_type, resource_id)

    def _state(self, resource_type: str, resource_id: str) -> str:
        key = (resource_type, resource_id)
        if key not in self._history:
            return "missing"
        return "deleted" if key in self._deleted else "live"

    def current(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            if self._state(resource_type, resource_id) != "live":
                return None
            return copy.deepcopy(self._history[(resource_type, resource_id)][-1])

    def version(self, resource_type: str, resource_id: str, version_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for stored in self._history.get((resource_type, resource_id), []):
                if stored["meta"]["versionId"] == version_id:
                    return copy.deepcopy(stored)
        return None

    def delete(self, resource_type: str, resource_id: str) -> bool:
        with self._lock:
            if self._state(resource_type, resource_id) != "live":
                return False
            self._deleted.add((resource_type, resource_id))
            return True

    def live(self, resource_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(versions[-1])
                for (rtype, rid), versions in self._history.items()
                if rtype == resource_type and (rtype, rid) not in self._deleted
            ]

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._deleted.clear()
            self._ids = itertools.count(1)


def _store() -> ResourceStore:
    return current_app.extensions["fhir_store"]


def fhir_response(resource: Any, status: int = 200, headers: Optional[Dict[str, str]] = None) -> Response:
    if isinstance(resource, OperationOutcome):
        resource = resource.as_resource()
    return Response(json.dumps(resource), status=status, mimetype=FHIR_JSON, headers=headers)


def error_response(error_type: str, **error_data: Any) -> Response:
    outcome, status = render_error(error_type, error_data)
    return fhir_response(outcome, status)


def _check_type(resource_type: str) -> Optional[Response]:
    if resource_type not in SUPPORTED_TYPES:
        return error_response("invalid_type", resource_type=resource_type, supported_types=", ".join(SUPPORTED_TYPES))
    return None


def _body_problem(resource_type: str, body: Any) -> Optional[str]:
    """Structural checks shared by create, update and $validate."""
    if not isinstance(body, dict):
        return "body must be a JSON object"
    if body.get("resourceType") != resource_type:
        return f"resourceType must be '{resource_type}', got {body.get('resourceType')!r}"
    if resource_type == "Patient":
        gender = body.get("gender")
        if gender is not None and gender not in PATIENT_GENDERS:
            return f"gender '{gender}' is not one of {sorted(PATIENT_GENDERS)}"
    if resource_type == "Condition":
        subject = body.get("subject")
        if not isinstance(subject, dict) or not subject.get("reference"):
            return "Condition.subject.reference is required"
    return None


def _location(resource: Dict[str, Any]) -> str:
    prefix = current_app.config["FHIR_BASE_PATH"]
    return f"{prefix}/{resource['resourceType']}/{resource['id']}/_history/{resource['meta']['versionId']}"


def _name_parts(resource: Dict[str, Any]) -> List[str]:
    names = resource.get("name")
    if not isinstance(names, list):
        return []
    parts = []
    for name in names:
        if not isinstance(name, dict):
            continue
        parts.append(name.get("text"))
        parts.append(name.get("family"))
        given = name.get("given")
        if isinstance(given, list):
            parts.extend(given)
    return [part.lower() for part in parts if isinstance(part, str) and part]


def _matches(resource: Dict[str, Any], param: str, value: str) -> bool:
    if param == "_id":
        return resource.get("id") == value
    if param in ("subject", "patient"):
        reference = (resource.get("subject") or {}).get("reference", "")
        return reference == value or reference == f"Patient/{value}"
    if param == "name":
        needle = value.lower()
        return any(needle in part for part in _name_parts(resource))
    if param == "gender":
        return resource.get("gender") == value
    return False


def create_resource(resource_type: str) -> Response:
    """POST /{type}: create a resource with a server-assigned id."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    body = request.get_json(force=True, silent=True)
    problem = _body_problem(resource_type, body)
    if problem:
        return error_response("invalid_body", resource_type=resource_type, diagnostics=problem)
    stored = _store().create(resource_type, body)
    return fhir_response(stored, 201, headers={"Location": _location(stored)})


def search_resources(resource_type: str) -> Response:
    """GET /{type}?...: searchset Bundle of live resources matching every parameter."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    supported = SEARCH_PARAMS[resource_type]
    # Result-control parameters such as _count and _format are accepted and ignored
    criteria = {k: v for k, v in request.args.items() if k in supported or not k.startswith("_")}
    unknown = sorted(k for k in criteria if k not in supported)
    if unknown:
        return error_response(
            "invalid_param",
            resource_type=resource_type,
            diagnostics=", ".join(unknown),
            supported_params=", ".join(supported),
        )
    matches = [
        resource for resource in _store().live(resource_type)
        if all(_matches(resource, param, value) for param, value in criteria.items())
    ]
    bundle = {
        "resourceType": "Bundle",
        "type": "searchset",
        "total": len(matches),
        "entry": [
            {"fullUrl": f"{resource_type}/{resource['id']}", "resource": resource, "search": {"mode": "match"}}
            for resource in matches
        ],
    }
    return fhir_response(bundle)


def read_resource(resource_type: str, resource_id: str) -> Response:
    """GET /{type}/{id}: 200, 404 when unknown, 410 when deleted."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    state = _store().state(resource_type, resource_id)
    if state == "missing":
        return error_response("not_found", resource_type=resource_type, resource_id=resource_id)
    if state == "deleted":
        return error_response("gone", resource_type=resource_type, resource_id=resource_id)
    return fhir_response(_store().current(resource_type, resource_id))


def update_resource(resource_type: str, resource_id: str) -> Response:
    """PUT /{type}/{id}: new version (200) or create with the given id (201)."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    body = request.get_json(force=True, silent=True)
    problem = _body_problem(resource_type, body)
    if problem is None and body.get("id") not in (None, resource_id):
        problem = f"body id {body.get('id')!r} does not match URL id '{resource_id}'"
    if problem:
        return error_response("invalid_body", resource_type=resource_type, diagnostics=problem)
    stored, created = _store().update(resource_type, resource_id, body)
    return fhir_response(stored, 201 if created else 200, headers={"Location": _location(stored)})


def patch_resource(resource_type: str, resource_id: str) -> Response:
    """PATCH /{type}/{id}: apply a JSON-Patch document and store the result as a new version."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    current = _store().current(resource_type, resource_id)
    if current is None:
        return read_resource(resource_type, resource_id)
    operations = request.get_json(force=True, silent=True)
    try:
        patched = apply_patch(current, operations)
    except PatchError as exc:
        return error_response("invalid_patch", resource_type=resource_type, resource_id=resource_id, diagnostics=str(exc))
    problem = _body_problem(resource_type, patched)
    if problem:
        return error_response("invalid_patch", resource_type=resource_type, resource_id=resource_id, diagnostics=problem)
    stored, _ = _store().update(resource_type, resource_id, patched)
    return fhir_response(stored)


def delete_resource(resource_type: str, resource_id: str) -> Response:
    """DELETE /{type}/{id}: 200 with an informational OperationOutcome."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    if not _store().delete(resource_type, resource_id):
        return read_resource(resource_type, resource_id)
    return fhir_response(render_information(f"Successfully deleted {resource_type}/{resource_id}"))


def read_version(resource_type: str, resource_id: str, version_id: str) -> Response:
    """GET /{type}/{id}/_history/{version}."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    stored = _store().version(resource_type, resource_id, version_id)
    if stored is None:
        return error_response(
            "version_not_found", resource_type=resource_type, resource_id=resource_id, version_id=version_id
        )
    return fhir_response(stored)


def validate_resource(resource_type: str) -> Response:
    """POST /{type}/$validate: check the body without storing it."""
    invalid = _check_type(resource_type)
    if invalid:
        return invalid
    problem = _body_problem(resource_type, request.get_json(force=True, silent=True))
    if problem:
        return error_response("invalid_body", resource_type=resource_type, diagnostics=problem)
    return fhir_response(render_information("No issues detected during validation"))


def process_transaction() -> Response:
    """POST /: apply a transaction Bundle of POST and PUT entries, all or nothing."""
    bundle = request.get_json(force=True, silent=True)
    if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
        return error_response("invalid_body", resource_type="Bundle", diagnostics="expected a Bundle resource")
    if bundle.get("type") not in ("transaction", "batch"):
        return error_response(
            "invalid_body", resource_type="Bundle", diagnostics=f"unsupported Bundle type {bundle.get('type')!r}"
        )

    # 1️⃣ Check every entry before writing anything
    planned = []
    for position, entry in enumerate(bundle.get("entry", []) or []):
        entry = entry if isinstance(entry, dict) else {}
        entry_request = entry.get("request") or {}
        method = str(entry_request.get("method", "")).upper()
        url_parts = str(entry_request.get("url", "")).strip("/").split("/")
        resource = entry.get("resource")
        resource_type = url_parts[0]
        problem = None
        if method not in ("POST", "PUT"):
            problem = f"entry {position}: method {method!r} is not supported"
        elif resource_type not in SUPPORTED_TYPES:
            problem = f"entry {position}: resource type {resource_type!r} is not supported"
        elif method == "PUT" and (len(url_parts) != 2 or not url_parts[1]):
            problem = f"entry {position}: PUT requires a '{resource_type}/[id]' url"
        else:
            problem = _body_problem(resource_type, resource)
            if problem:
                problem = f"entry {position}: {problem}"
        if problem:
            return error_response("invalid_body", resource_type="Bundle", diagnostics=problem)
        planned.append((method, resource_type, url_parts[1] if method == "PUT" else None, resource))

    # 2️⃣ Apply in order
    responses = []
    for method, resource_type, resource_id, resource in planned:
        if method == "POST":
            stored, status = _store().create(resource_type, resource), "201 Created"
        else:
            stored, created = _store().update(resource_type, resource_id, resource)
            status = "201 Created" if created else "200 OK"
        responses.append({
            "response": {
                "status": status,
                "location": f"{resource_type}/{stored['id']}/_history/{stored['meta']['versionId']}",
                "etag": f'W/"{stored["meta"]["versionId"]}"',
            }
        })
    return fhir_response({
        "resourceType": "Bundle",
        "type": f"{bundle['type']}-response",
        "entry": responses,
    })


def capability_statement() -> Response:
    """GET /metadata: the sandbox's CapabilityStatement."""
    resources = [
        {
            "type": resource_type,
            "interaction": [
                {"code": code}
                for code in ("read", "vread", "update", "patch", "delete", "create", "search-type")
            ],
            "searchParam": [{"name": name, "type": "string"} for name in SEARCH_PARAMS[resource_type]],
            "operation": [{"name": "validate", "definition": "http://hl7.org/fhir/OperationDefinition/Resource-validate"}],
        }
        for resource_type in SUPPORTED_TYPES
    ]
    return fhir_response({
        "resourceType": "CapabilityStatement",
        "status": "active",
        "date": _now(),
        "kind": "instance",
        "fhirVersion": "4.0.1",
        "format": ["json"],
        "rest": [{"mode": "server", "interaction": [{"code": "transaction"}], "resource": resources}],
    })


def handle_404(e):
    """Convert any Flask 404 into a FHIR OperationOutcome."""
    return error_response("unknown_route", diagnostics=getattr(e, "description", str(e)))


def handle_405(e):
    return error_response("method_not_allowed", diagnostics=f"{request.method} is not allowed on {request.path}")


def create_app(base_path: str = "/fhir") -> Flask:
    """
    Build a sandbox application serving FHIR under `base_path`.

    Each application owns its own ResourceStore, reachable through
    `app.extensions["fhir_store"]`.
    """
    app = Flask(__name__)
    prefix = "/" + base_path.strip("/") if base_path.strip("/") else ""
    app.config["FHIR_BASE_PATH"] = prefix
    app.extensions["fhir_store"] = ResourceStore()

    app.add_url_rule(prefix or "/", "transaction", process_transaction, methods=["POST"], strict_slashes=False)
    app.add_url_rule(f"{prefix}/metadata", "metadata", capability_statement, methods=["GET"])
    app.add_url_rule(f"{prefix}/<resource_type>", "create", create_resource, methods=["POST"])
    app.add_url_rule(f"{prefix}/<resource_type>", "search", search_resources, methods=["GET"])
    app.add_url_rule(f"{prefix}/<resource_type>/$validate", "validate", validate_resource, methods=["POST"])
    app.add_url_rule(f"{prefix}/<resource_type>/<resource_id>", "read", read_resource, methods=["GET"])
    app.add_url_rule(f"{prefix}/<resource_type>/<resource_id>", "update", update_resource, methods=["PUT"])
    app.add_url_rule(f"{prefix}/<resource_type>/<resource_id>", "patch", patch_resource, methods=["PATCH"])
    app.add_url_rule(f"{prefix}/<resource_type>/<resource_id>", "delete", delete_resource, methods=["DELETE"])
    app.add_url_rule(
        f"{prefix}/<resource_type>/<resource_id>/_history/<version_id>", "vread", read_version, methods=["GET"]
    )
    app.register_error_handler(404, handle_404)
    app.register_error_handler(405, handle_405)
    return app


# Entry point: serve the sandbox on SANDBOX_PORT (default 8080)
if __name__ == "__main__":
    settings = load_settings()
    create_app(settings.base_path).run(debug=True, use_reloader=False, port=settings.sandbox_port)
