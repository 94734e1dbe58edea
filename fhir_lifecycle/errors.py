"""Exceptions raised by the lifecycle client and runner.

HTTP status codes are never exceptions here: a 404 or 422 is returned as an
OperationResult and judged by the step that asked for it. Only failures that
leave no response to judge are raised.
"""


class LifecycleError(Exception):
    """Base class for errors raised by fhir_lifecycle."""


class TransportError(LifecycleError):
    """
    The request never produced a usable response.

    Covers connection refused, DNS and TLS failures, timeouts, and responses
    that declare a JSON content type but carry an unparseable body.
    """

    def __init__(self, method: str, url: str, reason: str):
        self.method = method
        self.url = url
        self.reason = reason
        super().__init__(f"{method} {url} failed: {reason}")


class PreconditionError(LifecycleError):
    """A step or operation needs fixture state that is not there yet."""

    def __init__(self, missing: str, step: str = None):
        self.missing = missing
        self.step = step
        where = f" for step '{step}'" if step else ""
        super().__init__(f"Missing required '{missing}'{where}")


class FixtureFileError(OSError):
    """An external fixture document is missing or unreadable."""
