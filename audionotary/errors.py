"""
Error taxonomy shared by the services, the provider adapters and the HTTP layer.

Every error carries a human-readable message, a suggested HTTP status and an
optional ``details`` dict that is merged into the JSON error body.
"""
from typing import Any, Dict, Optional


class NotaryError(Exception):
    """Base class for every failure surfaced to a caller."""

    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if http_status is not None:
            self.http_status = http_status
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, **self.details}


class ValidationError(NotaryError):
    """Missing or malformed input. Never retried."""

    http_status = 400


class AuthError(NotaryError):
    """Caller identity could not be resolved.

    401 when the caller simply has no (valid) identity, 500 when the identity
    provider itself broke.
    """

    http_status = 401


class UpstreamError(NotaryError):
    """An external provider answered with a non-success or unusable response."""

    http_status = 502

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        upstream_status: Optional[int] = None,
        upstream_body: Any = None,
    ):
        super().__init__(message, http_status, details)
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class UpstreamTimeout(UpstreamError):
    """External call exceeded its time budget. The client decides on retry."""

    http_status = 504
    retryable = True


class PersistenceError(NotaryError):
    """Store read/write failure. Fatal to the request."""

    http_status = 500
