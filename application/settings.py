"""Central configuration for the tokenfeed API and ingestion poller."""

from __future__ import annotations

import ipaddress
from typing import Literal

from pydantic import (
    AnyUrl,
    BaseModel,
    Field,
    HttpUrl,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.tokens.feed import DEFAULT_FEED_URL


class RedisSettings(BaseSettings):
    """Connection parameters for the shared Redis instance."""

    url: AnyUrl = Field(
        "redis://localhost:6379/0",
        description="Redis connection string shared by the API and the poller.",
    )
    key_prefix: str = Field(
        "",
        description=(
            "Optional namespace prepended to every key. Leave empty to use the bare "
            "token:*, z:*:latest, rl:* and idem:* layout."
        ),
    )
    socket_timeout_seconds: PositiveFloat = Field(
        5.0,
        description="Socket and connect timeout applied to Redis commands.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TOKENFEED_REDIS_", env_file=".env", extra="ignore"
    )


class RateLimitSettings(BaseSettings):
    """Token bucket parameters applied per client identity."""

    rate_per_second: PositiveFloat = Field(
        5.0,
        description="Sustained number of requests replenished per second.",
    )
    burst: PositiveInt = Field(
        10,
        description="Bucket capacity: requests a fresh client may issue back to back.",
    )
    key_namespace: str = Field(
        "rl",
        min_length=1,
        description="Key namespace used for bucket hashes in Redis.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TOKENFEED_RATE_", env_file=".env", extra="ignore"
    )


class IdempotencySettings(BaseSettings):
    """Lifetime of idempotency locks derived from client-supplied keys."""

    ttl_seconds: PositiveInt = Field(
        60,
        description=(
            "Safety-net expiry of an idempotency lock. Locks are normally released "
            "as soon as the guarded request completes."
        ),
    )
    header_name: str = Field(
        "Idempotency-Key",
        min_length=1,
        description="Request header carrying the client idempotency key.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TOKENFEED_IDEMPOTENCY_", env_file=".env", extra="ignore"
    )


class PollerSettings(BaseSettings):
    """Upstream feed polling configuration."""

    feed_url: HttpUrl = Field(
        DEFAULT_FEED_URL,
        description="Upstream token-profile feed polled by the ingestion loop.",
    )
    interval_seconds: PositiveFloat = Field(
        10.0,
        description="Delay between the end of one tick and the start of the next.",
    )
    chain: str = Field(
        "solana",
        min_length=1,
        description="Only profiles of this chain are ingested and served by the feed endpoint.",
    )
    token_ttl_hours: NonNegativeInt = Field(
        72,
        description=(
            "Lifetime of a token record after its last sighting. Also bounds the rolling "
            "recency index window. Zero disables expiry and trimming."
        ),
    )
    timeout_seconds: PositiveFloat = Field(
        10.0,
        description="HTTP timeout for upstream requests.",
    )
    enabled: bool = Field(
        False,
        description="Run the poller inside the API process lifespan.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TOKENFEED_POLLER_", env_file=".env", extra="ignore"
    )

    @property
    def token_ttl_seconds(self) -> int:
        return int(self.token_ttl_hours) * 3600


class ApiSettings(BaseSettings):
    """HTTP serving configuration."""

    host: str = Field("0.0.0.0", description="Interface the API binds to.")
    port: PositiveInt = Field(3000, description="Port the API listens on.")
    feed_page_size: PositiveInt = Field(
        50,
        description="Number of records returned by the upstream-compatible feed endpoint.",
    )
    default_page_size: PositiveInt = Field(50, description="Default ``limit`` for listings.")
    max_page_size: PositiveInt = Field(200, description="Upper bound for ``limit``.")
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description=(
            "Addresses or CIDR ranges of reverse proxies whose X-Forwarded-For and "
            "X-Real-IP headers are believed. Other peers are rate limited on their "
            "socket address."
        ),
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Root logging level."
    )
    log_json: bool = Field(True, description="Emit structured JSON logs.")

    model_config = SettingsConfigDict(
        env_prefix="TOKENFEED_API_", env_file=".env", extra="ignore"
    )

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_trusted_proxies(cls, value: list[str]) -> list[str]:
        for entry in value:
            ipaddress.ip_network(entry.strip(), strict=False)
        return [entry.strip() for entry in value]

    @model_validator(mode="after")
    def _validate_page_sizes(self) -> "ApiSettings":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size must not exceed max_page_size")
        if self.feed_page_size > self.max_page_size:
            raise ValueError("feed_page_size must not exceed max_page_size")
        return self


class ServiceSettings(BaseModel):
    """Aggregate of every settings group, loaded once per process."""

    redis: RedisSettings = Field(default_factory=RedisSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    poller: PollerSettings = Field(default_factory=PollerSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)


__all__ = [
    "ApiSettings",
    "IdempotencySettings",
    "PollerSettings",
    "RateLimitSettings",
    "RedisSettings",
    "ServiceSettings",
]
