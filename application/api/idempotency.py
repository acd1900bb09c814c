"""Idempotency support for tokenfeed HTTP APIs.

A request carrying an ``Idempotency-Key`` header takes a short-lived Redis
lock named after the key (``SET NX EX``). A second request presenting the
same key while the lock is held is rejected with a conflict. The lock is
deleted as soon as the guarded handler finishes, whatever its outcome; the
TTL only matters when a process dies between acquisition and release.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from core.errors import IdempotencyConflictError, StoreUnavailableError
from core.store.redis_store import RedisStore
from core.utils.logging import get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

__all__ = ["IdempotencyGuard", "IdempotencyKeyError", "validate_idempotency_key"]

logger = get_logger(__name__)

_IDEMPOTENCY_ALLOWED_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.:"
)
_MAX_KEY_LENGTH = 128
_LOCK_VALUE = "1"


class IdempotencyKeyError(ValueError):
    """Raised when a client-supplied idempotency key is malformed."""


def validate_idempotency_key(raw: str) -> str:
    key = raw.strip()
    if not key:
        raise IdempotencyKeyError("Idempotency-Key header must not be empty.")
    if len(key) > _MAX_KEY_LENGTH:
        raise IdempotencyKeyError(
            f"Idempotency-Key header exceeds {_MAX_KEY_LENGTH} characters."
        )
    if any(character not in _IDEMPOTENCY_ALLOWED_CHARS for character in key):
        raise IdempotencyKeyError("Idempotency-Key contains unsupported characters.")
    return key


class IdempotencyGuard:
    """Mutual exclusion keyed by client-supplied idempotency tokens."""

    def __init__(
        self,
        store: RedisStore,
        *,
        ttl_seconds: int = 60,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store = store
        self._ttl = int(ttl_seconds)
        self._metrics = metrics or get_metrics_collector()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    async def begin(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Try to take the lock for *key*; ``False`` means it is already held."""

        return await self._store.set_if_absent(
            self._store.keys.idempotency(key),
            _LOCK_VALUE,
            ttl_seconds=int(ttl_seconds or self._ttl),
        )

    async def end(self, key: str) -> None:
        await self._store.delete(self._store.keys.idempotency(key))

    @asynccontextmanager
    async def hold(self, key: str | None) -> AsyncIterator[None]:
        """Guard the enclosed block with the lock for *key*.

        ``None`` disables the guard. The lock is released on every exit path,
        including exceptions and task cancellation.
        """

        if key is None:
            yield
            return
        if not await self.begin(key):
            self._metrics.record_idempotency_conflict()
            logger.info("idempotency_conflict", idempotency_key=key)
            raise IdempotencyConflictError(
                "Duplicate request: idempotency key is already in use.",
                detail={"idempotency_key": key},
            )
        try:
            yield
        finally:
            try:
                await self.end(key)
            except StoreUnavailableError as exc:
                # The lock lapses with its TTL; the guarded outcome stands.
                logger.warning(
                    "idempotency_release_failed",
                    idempotency_key=key,
                    ttl_seconds=self._ttl,
                    error=str(exc),
                )
