"""Application layer wiring the token store into the HTTP surface."""

from .settings import (
    ApiSettings,
    IdempotencySettings,
    PollerSettings,
    RateLimitSettings,
    RedisSettings,
    ServiceSettings,
)

__all__ = [
    "ApiSettings",
    "IdempotencySettings",
    "PollerSettings",
    "RateLimitSettings",
    "RedisSettings",
    "ServiceSettings",
]
