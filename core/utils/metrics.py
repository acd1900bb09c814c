# SPDX-License-Identifier: MIT
"""Prometheus metrics for the tokenfeed API and ingestion poller."""
from __future__ import annotations

from contextlib import contextmanager
import time
from typing import Iterator, Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Centralised metric handles bound to a single Prometheus registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        self.poll_ticks_total = Counter(
            "tokenfeed_poll_ticks_total",
            "Upstream poll ticks grouped by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.poll_duration = Histogram(
            "tokenfeed_poll_duration_seconds",
            "Wall-clock duration of a single poll tick",
            registry=self.registry,
        )
        self.profiles_ingested_total = Counter(
            "tokenfeed_profiles_ingested_total",
            "Token profiles written to the store",
            ["chain"],
            registry=self.registry,
        )
        self.profiles_skipped_total = Counter(
            "tokenfeed_profiles_skipped_total",
            "Token profiles discarded during ingestion",
            ["reason"],
            registry=self.registry,
        )
        self.index_trimmed_total = Counter(
            "tokenfeed_index_trimmed_total",
            "Recency index members removed by the rolling TTL window",
            registry=self.registry,
        )
        self.rate_limit_decisions_total = Counter(
            "tokenfeed_rate_limit_decisions_total",
            "Token bucket admission decisions",
            ["decision"],
            registry=self.registry,
        )
        self.idempotency_conflicts_total = Counter(
            "tokenfeed_idempotency_conflicts_total",
            "Requests rejected because their idempotency key was held",
            registry=self.registry,
        )

    def record_poll(self, outcome: str) -> None:
        self.poll_ticks_total.labels(outcome=outcome).inc()

    @contextmanager
    def measure_poll(self) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.poll_duration.observe(time.perf_counter() - start)

    def record_ingested(self, chain: str, count: int) -> None:
        if count:
            self.profiles_ingested_total.labels(chain=chain).inc(count)

    def record_skipped(self, reason: str, count: int) -> None:
        if count:
            self.profiles_skipped_total.labels(reason=reason).inc(count)

    def record_trimmed(self, count: int) -> None:
        if count:
            self.index_trimmed_total.inc(count)

    def record_rate_limit(self, allowed: bool) -> None:
        self.rate_limit_decisions_total.labels(
            decision="allowed" if allowed else "rejected"
        ).inc()

    def record_idempotency_conflict(self) -> None:
        self.idempotency_conflicts_total.inc()

    def render(self) -> bytes:
        """Return the Prometheus text exposition for the bound registry."""

        return generate_latest(self.registry)


_collector: Optional[MetricsCollector] = None


def get_metrics_collector(registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Return the process-wide collector, creating it on first use.

    Passing an explicit *registry* always builds a dedicated collector, which
    keeps tests isolated from the default global registry.
    """
    global _collector
    if registry is not None:
        return MetricsCollector(registry)
    if _collector is None:
        _collector = MetricsCollector()
    return _collector


__all__ = ["MetricsCollector", "get_metrics_collector"]
