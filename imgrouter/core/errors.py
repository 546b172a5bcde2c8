"""Gateway error taxonomy.

Every error carries the HTTP status it should surface with, so the API layer
can render any of them through a single exception handler. Messages never
contain a full credential, only its masked form.
"""

from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    status_code = 500
    error_type = "server_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "type": self.error_type}


class ClassificationFailed(GatewayError):
    """The credential does not map to any dispatchable provider."""
    status_code = 401
    error_type = "invalid_api_key"


class NoKeyAvailable(GatewayError):
    """The key pool is empty, fully suspended, or filtered to nothing."""
    status_code = 503
    error_type = "no_key_available"


class UpstreamError(GatewayError):
    """A provider call failed. Carries the upstream status and raw body."""

    def __init__(
        self,
        provider: str,
        message: str,
        upstream_status: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.upstream_status = upstream_status
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        if self.upstream_status is not None:
            data["upstream_status"] = self.upstream_status
        return data


class MalformedUpstreamResponse(UpstreamError):
    """2xx response that lacks the fields the adapter needs."""


class TaskFailed(UpstreamError):
    """Async generation task reported a terminal failure."""


class TaskTimedOut(UpstreamError):
    """Async generation task never reached a terminal state."""


class PersistenceError(GatewayError):
    """Configuration store write failed; the in-memory change was rolled back."""
    error_type = "persistence_error"


class KeyNotFound(GatewayError):
    status_code = 404
    error_type = "not_found"


class ValidationError(GatewayError):
    status_code = 422
    error_type = "validation_error"
