"""Background ingestion loop mirroring the upstream feed into Redis.

Each tick runs two phases. *Fetch* performs a conditional GET using the
stored ETag. *Apply* runs only on a fresh body: profiles of the configured
chain are written as full hashes and upserted into the all-chain and
per-chain recency indexes in one non-transactional pipeline, after which the
indexes are trimmed to the rolling token TTL window.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

from core.errors import TokenFeedError
from core.store.redis_store import RedisStore
from core.tokens.feed import FeedResponse, TokenFeedClient
from core.tokens.models import parse_profiles, profile_to_hash
from core.utils.clock import MillisClock, epoch_millis
from core.utils.logging import correlation_context, get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

__all__ = ["FeedPoller", "TickOutcome", "TickReport"]


class TickOutcome(str, Enum):
    UPDATED = "updated"
    NOT_MODIFIED = "not_modified"
    FAILED = "failed"


@dataclass(slots=True)
class TickReport:
    """Summary of a single poll tick."""

    outcome: TickOutcome
    accepted: int = 0
    filtered: int = 0
    invalid: int = 0
    trimmed: int = 0
    write_failures: int = 0
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload


class FeedPoller:
    """Poll the feed on a fixed interval until stopped or cancelled."""

    def __init__(
        self,
        store: RedisStore,
        feed: TokenFeedClient,
        *,
        chain: str,
        interval_seconds: float = 10.0,
        token_ttl_seconds: int = 0,
        clock: MillisClock = epoch_millis,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        if not chain:
            raise ValueError("chain must be provided")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._store = store
        self._keys = store.keys
        self._feed = feed
        self._chain = chain
        self._interval = float(interval_seconds)
        self._ttl_seconds = max(0, int(token_ttl_seconds))
        self._clock = clock
        self._metrics = metrics or get_metrics_collector()
        self._stop_event = asyncio.Event()

    @property
    def chain(self) -> str:
        return self._chain

    def stop(self) -> None:
        """Ask :meth:`run` to exit without waiting for the next interval."""

        self._stop_event.set()

    async def run(self) -> None:
        logger.info(
            "poller_started",
            url=self._feed.url,
            chain=self._chain,
            interval_seconds=self._interval,
            token_ttl_seconds=self._ttl_seconds,
        )
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("poll_tick_crashed", chain=self._chain)
                self._metrics.record_poll(TickOutcome.FAILED.value)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        logger.info("poller_stopped", chain=self._chain)

    async def tick(self) -> TickReport:
        with correlation_context(), self._metrics.measure_poll():
            try:
                report = await self._tick()
            except TokenFeedError as exc:
                logger.warning(
                    "poll_tick_failed",
                    chain=self._chain,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    **exc.detail,
                )
                report = TickReport(outcome=TickOutcome.FAILED, error=str(exc))
        self._metrics.record_poll(report.outcome.value)
        return report

    async def _tick(self) -> TickReport:
        etag = await self._store.get(self._keys.etag)
        response = await self._feed.fetch(etag)
        if response.not_modified:
            return TickReport(outcome=TickOutcome.NOT_MODIFIED)

        report = await self._apply(response)
        if self._ttl_seconds:
            report.trimmed = await self._trim(self._clock())
        logger.info("poll_tick_applied", chain=self._chain, **report.as_dict())
        return report

    async def _apply(self, response: FeedResponse) -> TickReport:
        parsed = parse_profiles(response.body)
        report = TickReport(outcome=TickOutcome.UPDATED, invalid=parsed.invalid)
        now = self._clock()
        chain_index = self._keys.latest_chain(self._chain)

        pipeline = self._store.pipeline()
        queued = 0
        for profile in parsed.profiles:
            if profile.chain_id != self._chain:
                report.filtered += 1
                continue
            address = profile.token_address
            key = self._keys.token(address)
            pipeline.hset(key, mapping=profile_to_hash(profile, last_seen=now))
            if self._ttl_seconds:
                pipeline.expire(key, self._ttl_seconds)
            pipeline.zadd(self._keys.latest_all, {address: now})
            pipeline.zadd(chain_index, {address: now})
            queued += 1
        report.accepted = queued

        # Only persist the validator once the body parsed, so a malformed
        # response is fetched again on the next tick.
        if response.etag:
            pipeline.set(self._keys.etag, response.etag)
            queued += 1

        if queued:
            results = await self._store.execute(pipeline)
            report.write_failures = sum(
                1 for result in results if isinstance(result, Exception)
            )
            if report.write_failures:
                logger.warning(
                    "poll_tick_partial_write",
                    chain=self._chain,
                    failures=report.write_failures,
                )

        self._metrics.record_ingested(self._chain, report.accepted)
        self._metrics.record_skipped("other_chain", report.filtered)
        self._metrics.record_skipped("invalid", report.invalid)
        return report

    async def _trim(self, now_ms: int) -> int:
        """Drop index members last seen before ``now - ttl`` from both indexes."""

        cutoff = now_ms - self._ttl_seconds * 1000
        removed = 0
        for index in (self._keys.latest_all, self._keys.latest_chain(self._chain)):
            removed += await self._store.zremrangebyscore(index, "-inf", f"({cutoff}")
        self._metrics.record_trimmed(removed)
        return removed
