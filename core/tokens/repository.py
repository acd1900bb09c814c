"""Read side of the token store: point lookups and recency-ordered listings."""

from __future__ import annotations

from typing import Optional

from core.errors import StoreUnavailableError
from core.store.redis_store import RedisStore
from core.tokens.models import TokenProfile, profile_from_hash, profile_to_hash
from core.utils.clock import MillisClock, epoch_millis
from core.utils.logging import get_logger

logger = get_logger(__name__)

__all__ = ["TokenRepository"]


def _validate_window(offset: int, limit: int) -> None:
    if offset < 0:
        raise ValueError("offset must be non-negative")
    if limit < 1:
        raise ValueError("limit must be at least 1")


class TokenRepository:
    """Resolve recency indexes and token hashes into :class:`TokenProfile` objects.

    Index reads and hash resolution are two separate round trips with no
    locking in between. A token that expires or is rewritten by the poller in
    that gap is skipped or returned in its newer form respectively.
    """

    def __init__(
        self,
        store: RedisStore,
        *,
        token_ttl_seconds: int = 0,
        clock: MillisClock = epoch_millis,
    ) -> None:
        self._store = store
        self._keys = store.keys
        self._ttl_seconds = max(0, int(token_ttl_seconds))
        self._clock = clock

    async def get_by_address(self, address: str) -> Optional[TokenProfile]:
        mapping = await self._store.hgetall(self._keys.token(address))
        return profile_from_hash(mapping)

    async def list_latest(self, offset: int = 0, limit: int = 50) -> list[TokenProfile]:
        """Most recently seen tokens across every chain."""

        return await self._resolve(self._keys.latest_all, offset, limit)

    async def list_latest_by_chain(
        self, chain: str, offset: int = 0, limit: int = 50
    ) -> list[TokenProfile]:
        """Most recently seen tokens of a single chain."""

        return await self._resolve(self._keys.latest_chain(chain), offset, limit)

    async def count(self, chain: Optional[str] = None) -> int:
        index = self._keys.latest_chain(chain) if chain else self._keys.latest_all
        return await self._store.zcard(index)

    async def create(self, profile: TokenProfile) -> TokenProfile:
        """Write a manually registered token and make it listable.

        The record is written in full with whatever links *profile* carries;
        manual registrations normally have none.
        """

        now = self._clock()
        key = self._keys.token(profile.token_address)
        pipeline = self._store.pipeline()
        pipeline.hset(key, mapping=profile_to_hash(profile, last_seen=now))
        if self._ttl_seconds:
            pipeline.expire(key, self._ttl_seconds)
        member = {profile.token_address: now}
        pipeline.zadd(self._keys.latest_all, member)
        pipeline.zadd(self._keys.latest_chain(profile.chain_id), member)
        results = await self._store.execute(pipeline)
        failures = [result for result in results if isinstance(result, Exception)]
        if failures:
            logger.error(
                "token_create_failed",
                address=profile.token_address,
                failures=len(failures),
            )
            raise StoreUnavailableError(
                f"Failed to persist token {profile.token_address}: {failures[0]}",
                detail={"address": profile.token_address},
            )
        return profile.model_copy(update={"last_seen": now})

    async def purge(self) -> int:
        """Delete every token hash, recency index and the stored feed ETag.

        Operator reset used to rebuild the mirror from scratch; the next poll
        tick then refetches the full feed unconditionally.
        """

        keys = await self._store.scan_keys(self._keys.token_pattern())
        keys.extend(await self._store.scan_keys(self._keys.latest_pattern()))
        keys.append(self._keys.etag)
        removed = 0
        # Bounded DEL batches keep single commands small on large keyspaces.
        for start in range(0, len(keys), 500):
            removed += await self._store.delete(*keys[start : start + 500])
        logger.info("token_store_purged", removed=removed)
        return removed

    async def _resolve(self, index: str, offset: int, limit: int) -> list[TokenProfile]:
        _validate_window(offset, limit)
        addresses = await self._store.zrevrange(index, offset, offset + limit - 1)
        if not addresses:
            return []
        mappings = await self._store.hgetall_many(
            [self._keys.token(address) for address in addresses]
        )
        profiles: list[TokenProfile] = []
        for mapping in mappings:
            profile = profile_from_hash(mapping)
            if profile is not None:
                profiles.append(profile)
        return profiles
