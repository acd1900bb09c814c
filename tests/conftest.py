from __future__ import annotations

import fakeredis
import fakeredis.aioredis
import pytest
from prometheus_client import CollectorRegistry

from core.store.redis_store import KeySpace, RedisStore
from core.utils.clock import ManualClock
from core.utils.metrics import MetricsCollector
from tests.feeds import FeedStub


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    return MetricsCollector(registry)


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server: fakeredis.FakeServer) -> fakeredis.aioredis.FakeRedis:
    return fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def store(redis_client: fakeredis.aioredis.FakeRedis) -> RedisStore:
    return RedisStore(redis_client, keys=KeySpace())


@pytest.fixture
def offline_store(redis_server: fakeredis.FakeServer, store: RedisStore) -> RedisStore:
    """Store whose server refuses every command, as during a Redis outage."""

    redis_server.connected = False
    return store


@pytest.fixture
def feed_stub() -> FeedStub:
    return FeedStub()
