"""HTTP clients for exercising a FHIR server's REST API.

`ResourceClient` addresses one resource type's collection and instance
endpoints; `SystemClient` covers the server-level endpoints (transaction
bundles, documents posted to the base, the CapabilityStatement).

Every call returns an `OperationResult`. Non-2xx responses are returned, not
raised, so callers can assert on expected failures. Only transport problems
raise `TransportError`, and unreadable fixture files raise `FixtureFileError`.

Usage:
    conditions = ResourceClient("http://localhost:8080", "/fhir", "Condition")
    result = conditions.create(payload)
    conditions.read(result.body["id"])
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import quote

import requests

from fhir_lifecycle.config import Settings
from fhir_lifecycle.errors import FixtureFileError, PreconditionError, TransportError
from fhir_lifecycle.schemas import OperationResult, PatchOperation, ResourceDescriptor

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"
ACCEPT_HEADER = "application/fhir+json, application/json"

PathLike = Union[str, Path]


def join_url(base_uri: str, base_path: str, path: str = "") -> str:
    """Compose '{base_uri}{base_path}{path}' without doubled or missing slashes."""
    url = base_uri.rstrip("/")
    prefix = base_path.strip("/")
    if prefix:
        url += "/" + prefix
    if path:
        url += "/" + path.lstrip("/")
    return url


def read_document_bytes(path: PathLike) -> bytes:
    """Read an external fixture document in full, as raw bytes."""
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError as exc:
        raise FixtureFileError(exc.errno, f"Cannot read fixture document: {exc.strerror}", str(path)) from exc


def _require_id(value: Optional[str], name: str) -> str:
    if value is None or str(value).strip() == "":
        raise PreconditionError(name)
    return quote(str(value), safe="")


class FhirHttpClient:
    """
    Shared transport for the FHIR clients.

    Sends exactly one request per call (no retries) and normalizes the
    response into an OperationResult.

    Raises:
        TransportError: when no usable response is received.
    """
    def __init__(self, base_uri: str, base_path: str = "", timeout: float = 10):
        """
        Initialize the client.

        Args:
            base_uri: Scheme and host of the FHIR server (e.g., 'http://localhost:8080').
            base_path: Path prefix of the FHIR endpoint (e.g., '/fhir'). May be empty.
            timeout: Request timeout in seconds.
        """
        self.base_uri = base_uri
        self.base_path = base_path
        self.timeout = timeout

    def url_for(self, path: str = "") -> str:
        return join_url(self.base_uri, self.base_path, path)

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        content_type: Optional[str] = None,
    ) -> OperationResult:
        url = self.url_for(path)
        headers = {"Accept": ACCEPT_HEADER}
        if content_type:
            headers["Content-Type"] = content_type
        logger.debug("%s %s params=%s", method, url, dict(params) if params else {})
        started = time.perf_counter()
        try:
            resp = requests.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.debug("%s %s raised %r", method, url, exc)
            raise TransportError(method, url, str(exc)) from exc
        elapsed = (time.perf_counter() - started) * 1000.0
        logger.debug("%s %s -> %s in %.1f ms", method, url, resp.status_code, elapsed)
        return self._to_result(resp, method, url, elapsed)

    @staticmethod
    def _to_result(resp: requests.Response, method: str, url: str, elapsed: float) -> OperationResult:
        text = resp.text or ""
        content_type = resp.headers.get("Content-Type", "") if resp.headers else ""
        body = None
        if text.strip():
            try:
                body = json.loads(text)
            except ValueError as exc:
                # A body that claims to be JSON but is not is a broken response
                if "json" in content_type.lower():
                    raise TransportError(method, url, f"malformed JSON response: {exc}") from exc
        return OperationResult(
            status_code=resp.status_code,
            text=text,
            body=body,
            elapsed_millis=elapsed,
            method=method,
            url=url,
        )


class ResourceClient(FhirHttpClient):
    """
    Client for one FHIR resource type.

    All paths are relative to `{base_uri}{base_path}{collection_path}`.

    Examples:
        >>> patients = ResourceClient("http://localhost:8080", "/fhir", "Patient")
        >>> patients.read("123").status_code
        200
        >>> patients.search_by_reference("name", "Mohanad").body["resourceType"]
        'Bundle'
    """
    def __init__(
        self,
        base_uri: str,
        base_path: str,
        resource: Union[str, ResourceDescriptor],
        timeout: float = 10,
    ):
        super().__init__(base_uri, base_path, timeout)
        if isinstance(resource, str):
            resource = ResourceDescriptor.for_type(resource)
        self.descriptor = resource

    @classmethod
    def from_settings(cls, settings: Settings, resource: Union[str, ResourceDescriptor]) -> "ResourceClient":
        return cls(settings.base_uri, settings.base_path, resource, timeout=settings.timeout)

    @property
    def resource_type(self) -> str:
        return self.descriptor.resource_type

    def _instance_path(self, resource_id: str) -> str:
        return f"{self.descriptor.collection_path}/{_require_id(resource_id, 'resource_id')}"

    def read(self, resource_id: str) -> OperationResult:
        """
        GET a resource by id.

        Args:
            resource_id: Server-assigned id; must be non-empty.

        Returns:
            The OperationResult; 404/410 come back as results, not errors.

        Raises:
            PreconditionError: if resource_id is empty.
            TransportError: if no response was received.
        """
        return self._send("GET", self._instance_path(resource_id))

    def create(self, payload: Mapping[str, Any]) -> OperationResult:
        """POST a new resource. The server-assigned id is in the result body's 'id'."""
        return self._send("POST", self.descriptor.collection_path, json_body=dict(payload))

    def replace(self, resource_id: str, payload: Mapping[str, Any]) -> OperationResult:
        """
        PUT a full replacement of a resource.

        The payload's 'id' is forced to `resource_id`; the caller's mapping is
        copied, not modified.
        """
        path = self._instance_path(resource_id)
        body = dict(payload)
        body["id"] = resource_id
        return self._send("PUT", path, json_body=body)

    def patch(self, resource_id: str, path: str, value: Any) -> OperationResult:
        """
        Apply a single JSON-Patch 'replace' to a resource.

        Args:
            resource_id: Target resource id.
            path: JSON Pointer of the element to replace (e.g., '/code/text').
            value: Scalar replacement value.

        How the server treats a pointer to an absent element is up to the server.
        """
        instance = self._instance_path(resource_id)
        document = [PatchOperation(path=path, value=value).model_dump(mode="json")]
        return self._send(
            "PATCH",
            instance,
            data=json.dumps(document).encode("utf-8"),
            content_type=JSON_PATCH_CONTENT_TYPE,
        )

    def delete(self, resource_id: str) -> OperationResult:
        """DELETE a resource. Servers answer 200 or 204 on success."""
        return self._send("DELETE", self._instance_path(resource_id))

    def validate(self, payload: Mapping[str, Any]) -> OperationResult:
        """POST a resource to '$validate' without persisting it; any status is passed through."""
        return self._send("POST", f"{self.descriptor.collection_path}/$validate", json_body=dict(payload))

    def search(self, params: Mapping[str, Any]) -> OperationResult:
        """GET the collection with arbitrary search parameters. The Bundle is not parsed further."""
        return self._send("GET", self.descriptor.collection_path, params=dict(params))

    def search_by_reference(self, param_name: str, value: str) -> OperationResult:
        """GET the collection filtered by one parameter, e.g. subject=Patient/123."""
        return self.search({param_name: value})

    def read_version(self, resource_id: str, version_tag: str) -> OperationResult:
        """GET a historical version via '_history/{version_tag}'."""
        path = f"{self._instance_path(resource_id)}/_history/{_require_id(version_tag, 'version_tag')}"
        return self._send("GET", path)

    def create_from_external_document(self, path: PathLike) -> OperationResult:
        """
        POST the raw bytes of a JSON document to the collection, unmodified.

        Raises:
            FixtureFileError: if the file is missing or unreadable.
        """
        raw = read_document_bytes(path)
        return self._send("POST", self.descriptor.collection_path, data=raw, content_type=JSON_CONTENT_TYPE)


class SystemClient(FhirHttpClient):
    """Client for server-level endpoints: the base URL and /metadata."""

    @classmethod
    def from_settings(cls, settings: Settings) -> "SystemClient":
        return cls(settings.base_uri, settings.base_path, timeout=settings.timeout)

    def transaction(self, bundle: Mapping[str, Any]) -> OperationResult:
        """POST a transaction (or batch) Bundle to the base endpoint."""
        return self._send("POST", "", json_body=dict(bundle))

    def post_document(self, path: PathLike) -> OperationResult:
        """POST an external JSON document, usually a Bundle, verbatim to the base endpoint."""
        raw = read_document_bytes(path)
        return self._send("POST", "", data=raw, content_type=JSON_CONTENT_TYPE)

    def capabilities(self) -> OperationResult:
        """GET the server's CapabilityStatement."""
        return self._send("GET", "/metadata")


def resource_id_from(result: OperationResult, resource_type: str) -> Optional[str]:
    """
    Pull the 'id' of a created resource out of a result body.

    Returns None unless the body is a resource of `resource_type`; an
    OperationOutcome's id is never mistaken for the created resource's.
    """
    body: Dict[str, Any] = result.body if isinstance(result.body, dict) else {}
    if body.get("resourceType") != resource_type:
        return None
    resource_id = body.get("id")
    return str(resource_id) if resource_id else None
