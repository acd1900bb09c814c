"""Error envelope shared by every tokenfeed HTTP response."""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any, Mapping

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ApiErrorCode",
    "DEFAULT_ERROR_CODES",
    "ErrorPayload",
    "ErrorResponse",
    "COMMON_ERROR_RESPONSES",
    "error_response",
    "resolve_error_code",
]


class ApiErrorCode(str, Enum):
    """Stable error codes returned by the public HTTP API."""

    BAD_REQUEST = "ERR_BAD_REQUEST"
    NOT_FOUND = "ERR_NOT_FOUND"
    RATE_LIMIT = "ERR_RATE_LIMIT"
    VALIDATION_FAILED = "ERR_VALIDATION_FAILED"
    INTERNAL = "ERR_INTERNAL"
    IDEMPOTENCY_CONFLICT = "ERR_IDEMPOTENCY_CONFLICT"
    IDEMPOTENCY_INVALID = "ERR_IDEMPOTENCY_INVALID"
    STORE_UNAVAILABLE = "ERR_STORE_UNAVAILABLE"
    UPSTREAM_UNAVAILABLE = "ERR_UPSTREAM_UNAVAILABLE"
    UPSTREAM_MALFORMED = "ERR_UPSTREAM_MALFORMED"


DEFAULT_ERROR_CODES: dict[int, ApiErrorCode] = {
    status.HTTP_400_BAD_REQUEST: ApiErrorCode.BAD_REQUEST,
    status.HTTP_404_NOT_FOUND: ApiErrorCode.NOT_FOUND,
    status.HTTP_405_METHOD_NOT_ALLOWED: ApiErrorCode.BAD_REQUEST,
    status.HTTP_409_CONFLICT: ApiErrorCode.IDEMPOTENCY_CONFLICT,
    422: ApiErrorCode.VALIDATION_FAILED,
    status.HTTP_429_TOO_MANY_REQUESTS: ApiErrorCode.RATE_LIMIT,
    status.HTTP_500_INTERNAL_SERVER_ERROR: ApiErrorCode.INTERNAL,
    status.HTTP_502_BAD_GATEWAY: ApiErrorCode.UPSTREAM_UNAVAILABLE,
    status.HTTP_503_SERVICE_UNAVAILABLE: ApiErrorCode.STORE_UNAVAILABLE,
}


def resolve_error_code(value: Any, default: ApiErrorCode) -> ApiErrorCode:
    if isinstance(value, ApiErrorCode):
        return value
    if isinstance(value, str):
        try:
            return ApiErrorCode(value)
        except ValueError:
            return default
    return default


class ErrorPayload(BaseModel):
    """Canonical error payload returned by the HTTP API."""

    code: ApiErrorCode = Field(..., description="Stable application error code.")
    message: str = Field(..., description="Human-readable description of the error.")
    path: str = Field(..., description="Request path that triggered the error.")
    meta: dict[str, Any] | None = Field(
        default=None,
        description="Optional machine-parsable context for troubleshooting.",
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "code": ApiErrorCode.RATE_LIMIT.value,
                    "message": "Rate limit exceeded for this client.",
                    "path": "/tokens",
                    "meta": None,
                }
            ]
        },
    )


class ErrorResponse(BaseModel):
    """Envelope structuring error responses."""

    error: ErrorPayload


COMMON_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status.HTTP_400_BAD_REQUEST: {
        "model": ErrorResponse,
        "description": "Malformed request or idempotency key.",
    },
    status.HTTP_409_CONFLICT: {
        "model": ErrorResponse,
        "description": "Another request holding the same idempotency key is in flight.",
    },
    422: {
        "model": ErrorResponse,
        "description": "Query or body parameters failed validation.",
    },
    status.HTTP_429_TOO_MANY_REQUESTS: {
        "model": ErrorResponse,
        "description": "Client exceeded its token bucket; retry after the advertised delay.",
    },
    status.HTTP_503_SERVICE_UNAVAILABLE: {
        "model": ErrorResponse,
        "description": "The backing Redis store is unavailable.",
    },
}


def error_response(
    status_code: int,
    *,
    path: str,
    code: ApiErrorCode | None = None,
    message: str | None = None,
    meta: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Render the standard error envelope."""

    resolved_code = code or DEFAULT_ERROR_CODES.get(status_code, ApiErrorCode.INTERNAL)
    if not message:
        try:
            message = HTTPStatus(status_code).phrase
        except ValueError:
            message = "An error occurred"
    payload = ErrorPayload(
        code=resolved_code,
        message=message,
        path=path,
        meta=dict(meta) if meta else None,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=payload).model_dump(mode="json"),
        headers=dict(headers) if headers else None,
    )
