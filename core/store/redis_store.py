"""Thin asyncio Redis facade exposing the primitives tokenfeed relies on.

Every command issued through :class:`RedisStore` translates
``redis.exceptions.RedisError`` into :class:`core.errors.StoreUnavailableError`
so that callers can map store outages onto a single failure mode instead of
leaking client-library exceptions into request handlers.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Sequence

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from core.errors import StoreUnavailableError
from core.utils.logging import get_logger

__all__ = ["KeySpace", "RedisStore", "build_redis_client"]

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class KeySpace:
    """Naming scheme for every key tokenfeed writes to Redis."""

    prefix: str = ""

    def _key(self, suffix: str) -> str:
        if not self.prefix:
            return suffix
        return f"{self.prefix.rstrip(':')}:{suffix}"

    def token(self, address: str) -> str:
        return self._key(f"token:{address}")

    def token_pattern(self) -> str:
        return self._key("token:*")

    @property
    def latest_all(self) -> str:
        return self._key("z:tokens:latest")

    def latest_chain(self, chain: str) -> str:
        return self._key(f"z:{chain}:latest")

    def latest_pattern(self) -> str:
        return self._key("z:*:latest")

    @property
    def etag(self) -> str:
        return self._key("dex:latest:etag")

    def bucket(self, identity: str, *, namespace: str = "rl") -> str:
        return self._key(f"{namespace}:{identity}")

    def idempotency(self, key: str) -> str:
        return self._key(f"idem:{key}")


@contextmanager
def _translate_errors(command: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("redis_command_failed", command=command, error=str(exc))
        raise StoreUnavailableError(
            f"Redis command {command} failed: {exc}",
            detail={"command": command},
        ) from exc


class RedisStore:
    """Async key-value operations backed by a ``redis.asyncio`` client."""

    def __init__(self, client: Redis, *, keys: KeySpace | None = None) -> None:
        self._client = client
        self.keys = keys or KeySpace()

    @property
    def client(self) -> Redis:
        return self._client

    async def ping(self) -> bool:
        with _translate_errors("PING"):
            return bool(await self._client.ping())

    async def get(self, key: str) -> str | None:
        with _translate_errors("GET"):
            return await self._client.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        with _translate_errors("SET"):
            await self._client.set(key, value, ex=ttl_seconds if ttl_seconds else None)

    async def set_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        """Atomically create *key* unless it already exists."""

        with _translate_errors("SET NX"):
            created = await self._client.set(key, value, nx=True, ex=ttl_seconds)
        return bool(created)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors("DEL"):
            return int(await self._client.delete(*keys))

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        with _translate_errors("HSET"):
            await self._client.hset(key, mapping=dict(mapping))

    async def hgetall(self, key: str) -> dict[str, str]:
        with _translate_errors("HGETALL"):
            return dict(await self._client.hgetall(key))

    async def hgetall_many(self, keys: Sequence[str]) -> list[dict[str, str]]:
        """Resolve several hashes in one pipelined round trip."""

        if not keys:
            return []
        pipeline = self._client.pipeline(transaction=False)
        for key in keys:
            pipeline.hgetall(key)
        with _translate_errors("HGETALL"):
            results = await pipeline.execute()
        return [dict(result or {}) for result in results]

    async def zadd(self, key: str, members: Mapping[str, float]) -> None:
        with _translate_errors("ZADD"):
            await self._client.zadd(key, dict(members))

    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]:
        with _translate_errors("ZREVRANGE"):
            return list(await self._client.zrevrange(key, start, stop))

    async def zscore(self, key: str, member: str) -> float | None:
        with _translate_errors("ZSCORE"):
            return await self._client.zscore(key, member)

    async def zcard(self, key: str) -> int:
        with _translate_errors("ZCARD"):
            return int(await self._client.zcard(key))

    async def zremrangebyscore(self, key: str, minimum: float | str, maximum: float | str) -> int:
        with _translate_errors("ZREMRANGEBYSCORE"):
            return int(await self._client.zremrangebyscore(key, minimum, maximum))

    async def scan_keys(self, pattern: str, *, count: int = 1000) -> list[str]:
        """Enumerate keys matching *pattern* without blocking the server."""

        found: list[str] = []
        with _translate_errors("SCAN"):
            async for key in self._client.scan_iter(match=pattern, count=count):
                found.append(key)
        return found

    def register_script(self, source: str) -> AsyncScript:
        return self._client.register_script(source)

    async def run_script(
        self,
        script: AsyncScript,
        *,
        keys: Sequence[str],
        args: Sequence[Any],
    ) -> Any:
        """Execute a registered Lua script atomically on the server."""

        with _translate_errors("EVALSHA"):
            return await script(keys=list(keys), args=list(args))

    def pipeline(self) -> Pipeline:
        """Return a non-transactional pipeline for batched writes."""

        return self._client.pipeline(transaction=False)

    async def execute(self, pipeline: Pipeline) -> list[Any]:
        """Flush *pipeline*; per-command failures are returned, not raised."""

        with _translate_errors("PIPELINE"):
            return list(await pipeline.execute(raise_on_error=False))

    async def aclose(self) -> None:
        await self._client.aclose()


def build_redis_client(url: str, *, socket_timeout: float | None = None) -> Redis:
    """Create a ``redis.asyncio`` client returning ``str`` responses."""

    return Redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )
