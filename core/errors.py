"""Exception hierarchy shared by the ingestion pipeline and the HTTP surface."""

from __future__ import annotations

from typing import Any, Mapping

__all__ = [
    "TokenFeedError",
    "StoreUnavailableError",
    "UpstreamUnavailableError",
    "MalformedFeedError",
    "IdempotencyConflictError",
]


class TokenFeedError(RuntimeError):
    """Base class for failures raised by tokenfeed components."""

    status_code: int = 500
    code: str = "ERR_INTERNAL"

    def __init__(self, message: str, *, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail = dict(detail or {})


class StoreUnavailableError(TokenFeedError):
    """Raised when Redis rejects or cannot serve a command."""

    status_code = 503
    code = "ERR_STORE_UNAVAILABLE"


class UpstreamUnavailableError(TokenFeedError):
    """Raised when the upstream feed cannot be reached or answers non-2xx."""

    status_code = 502
    code = "ERR_UPSTREAM_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.status = status


class MalformedFeedError(TokenFeedError):
    """Raised when the upstream body is neither a profile list nor a wrapped one."""

    status_code = 502
    code = "ERR_UPSTREAM_MALFORMED"


class IdempotencyConflictError(TokenFeedError):
    """Raised when an idempotency key is already held by another request."""

    status_code = 409
    code = "ERR_IDEMPOTENCY_CONFLICT"
