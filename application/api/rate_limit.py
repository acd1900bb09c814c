"""Distributed token bucket rate limiting for tokenfeed APIs.

Bucket state lives in a Redis hash per client identity and is updated by a
single Lua script, so concurrent requests from one identity can never both
spend the same token. The arithmetic is mirrored by :func:`refill_bucket`
which documents the algorithm and backs the property tests.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from fastapi import HTTPException, status

from application.settings import RateLimitSettings
from core.store.redis_store import RedisStore
from core.utils.clock import MillisClock, epoch_millis
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

__all__ = [
    "BucketState",
    "RateLimitDecision",
    "RateLimiterBackend",
    "RedisTokenBucketBackend",
    "TokenBucketRateLimiter",
    "TOKEN_BUCKET_SCRIPT",
    "bucket_ttl_ms",
    "build_rate_limiter",
    "refill_bucket",
]

logger = get_logger(__name__)

# KEYS[1] bucket hash; ARGV: now_ms, rate_per_second, burst, ttl_ms.
# The stored timestamp never moves backwards so a clock regression cannot
# replay the same elapsed interval twice.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local ttl_ms = tonumber(ARGV[4])
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local last = tonumber(state[2])
if tokens == nil or last == nil then
  tokens = burst
  last = now
end
local elapsed = math.max(0, now - last)
tokens = math.min(burst, tokens + elapsed * rate / 1000)
local allowed = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(math.max(last, now)))
redis.call('PEXPIRE', key, ttl_ms)
return {allowed, tostring(tokens)}
"""


@dataclass(frozen=True, slots=True)
class BucketState:
    """Token count and refill timestamp of one identity's bucket."""

    tokens: float
    last_refill_ms: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of a single admission attempt."""

    allowed: bool
    tokens_remaining: float
    retry_after_seconds: int


def refill_bucket(
    state: BucketState | None,
    *,
    now_ms: int,
    rate_per_second: float,
    burst: float,
) -> tuple[bool, BucketState]:
    """Apply one admission attempt to *state* and return ``(allowed, new_state)``.

    A missing bucket is treated as full. Elapsed time is clamped at zero and
    the refilled count is capped at *burst* before one token is spent.
    """

    if state is None:
        state = BucketState(tokens=float(burst), last_refill_ms=now_ms)
    elapsed = max(0, now_ms - state.last_refill_ms)
    tokens = min(float(burst), state.tokens + elapsed * rate_per_second / 1000.0)
    last = max(state.last_refill_ms, now_ms)
    if tokens < 1:
        return False, BucketState(tokens=tokens, last_refill_ms=last)
    return True, BucketState(tokens=tokens - 1, last_refill_ms=last)


def bucket_ttl_ms(rate_per_second: float, burst: float) -> int:
    """Time for an empty bucket to refill completely, used as its eviction TTL.

    Once that much time has passed a missing bucket and a full one behave
    identically, so expiring the hash never changes an admission decision.
    """

    return max(1000, math.ceil(burst / rate_per_second * 1000))


def _retry_after(tokens: float, rate_per_second: float) -> int:
    if tokens >= 1:
        return 0
    return max(1, math.ceil((1 - tokens) / rate_per_second))


class RateLimiterBackend(Protocol):
    """Protocol describing an atomic token bucket backend."""

    async def consume(
        self, key: str, *, now_ms: int, rate_per_second: float, burst: int
    ) -> tuple[bool, float]:
        """Spend one token from *key* and return ``(allowed, tokens_left)``."""


class RedisTokenBucketBackend:
    """Execute the token bucket update as a server-side Lua script."""

    def __init__(self, store: RedisStore) -> None:
        self._store = store
        self._script = store.register_script(TOKEN_BUCKET_SCRIPT)

    async def consume(
        self, key: str, *, now_ms: int, rate_per_second: float, burst: int
    ) -> tuple[bool, float]:
        allowed, tokens = await self._store.run_script(
            self._script,
            keys=[key],
            args=[now_ms, rate_per_second, burst, bucket_ttl_ms(rate_per_second, burst)],
        )
        return int(allowed) == 1, float(tokens)


class TokenBucketRateLimiter:
    """Per-identity admission control over a :class:`RateLimiterBackend`."""

    def __init__(
        self,
        backend: RateLimiterBackend,
        settings: RateLimitSettings,
        *,
        store: RedisStore,
        clock: MillisClock = epoch_millis,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self._keys = store.keys
        self._clock = clock
        self._metrics = metrics or get_metrics_collector()

    @property
    def settings(self) -> RateLimitSettings:
        return self._settings

    async def admit(
        self,
        identity: str,
        rate_per_second: float | None = None,
        burst: int | None = None,
    ) -> RateLimitDecision:
        """Consume one token for *identity*.

        Store failures propagate as :class:`core.errors.StoreUnavailableError`;
        an unreachable store never results in an implicit allow.
        """

        rate = float(rate_per_second or self._settings.rate_per_second)
        capacity = int(burst or self._settings.burst)
        allowed, tokens = await self._backend.consume(
            self._keys.bucket(identity, namespace=self._settings.key_namespace),
            now_ms=self._clock(),
            rate_per_second=rate,
            burst=capacity,
        )
        self._metrics.record_rate_limit(allowed)
        return RateLimitDecision(
            allowed=allowed,
            tokens_remaining=tokens,
            retry_after_seconds=_retry_after(tokens, rate),
        )

    async def check(self, identity: str) -> RateLimitDecision:
        decision = await self.admit(identity)
        if not decision.allowed:
            logger.info(
                "rate_limited",
                identity=identity,
                retry_after_seconds=decision.retry_after_seconds,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded for this client.",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )
        return decision


def build_rate_limiter(
    store: RedisStore,
    settings: RateLimitSettings,
    *,
    clock: MillisClock = epoch_millis,
    metrics: MetricsCollector | None = None,
) -> TokenBucketRateLimiter:
    """Instantiate the Redis-backed token bucket limiter."""

    backend = RedisTokenBucketBackend(store)
    return TokenBucketRateLimiter(
        backend, settings, store=store, clock=clock, metrics=metrics
    )
