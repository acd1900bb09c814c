from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
from fastapi import FastAPI

from application.api.service import create_app
from application.settings import (
    ApiSettings,
    IdempotencySettings,
    PollerSettings,
    RateLimitSettings,
    RedisSettings,
    ServiceSettings,
)


def build_settings(**overrides: Any) -> ServiceSettings:
    """Deterministic, test-friendly settings; keyword groups replace the defaults."""

    groups: dict[str, Any] = {
        "redis": RedisSettings(url="redis://localhost:6379/15"),
        "rate_limit": RateLimitSettings(rate_per_second=5.0, burst=50),
        "idempotency": IdempotencySettings(ttl_seconds=30),
        "poller": PollerSettings(chain="solana", interval_seconds=0.01, token_ttl_hours=1),
        "api": ApiSettings(feed_page_size=2, default_page_size=3, max_page_size=5),
    }
    groups.update(overrides)
    return ServiceSettings(**groups)


@pytest.fixture
def app_factory(store, clock, metrics) -> Callable[..., FastAPI]:
    """Return a callable building the API over the shared fake Redis store."""

    def factory(**overrides: Any) -> FastAPI:
        feed_client = overrides.pop("feed_client", None)
        return create_app(
            build_settings(**overrides),
            store=store,
            feed_client=feed_client,
            clock=clock,
            metrics=metrics,
        )

    return factory


@pytest.fixture
def api_app(app_factory) -> FastAPI:
    return app_factory()


@pytest.fixture
async def async_api_client(api_app):
    transport = httpx.ASGITransport(app=api_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
