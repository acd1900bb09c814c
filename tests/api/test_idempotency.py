import pytest

from application.api.idempotency import (
    IdempotencyGuard,
    IdempotencyKeyError,
    validate_idempotency_key,
)
from core.errors import IdempotencyConflictError, StoreUnavailableError


@pytest.mark.parametrize("raw", ["order-1", "  abc.DEF:123_x  ", "a" * 128])
def test_validate_idempotency_key_accepts_safe_tokens(raw: str) -> None:
    assert validate_idempotency_key(raw) == raw.strip()


@pytest.mark.parametrize("raw", ["", "   ", "a" * 129, "has space", "emoji-✓", "slash/key"])
def test_validate_idempotency_key_rejects_malformed_tokens(raw: str) -> None:
    with pytest.raises(IdempotencyKeyError):
        validate_idempotency_key(raw)


def test_guard_requires_positive_ttl(store) -> None:
    with pytest.raises(ValueError):
        IdempotencyGuard(store, ttl_seconds=0)


@pytest.mark.anyio
async def test_begin_is_exclusive_until_end(store, metrics) -> None:
    guard = IdempotencyGuard(store, ttl_seconds=60, metrics=metrics)

    assert await guard.begin("abc") is True
    assert await guard.begin("abc") is False

    await guard.end("abc")

    assert await guard.begin("abc") is True


@pytest.mark.anyio
async def test_lock_carries_a_safety_ttl(store, redis_client, metrics) -> None:
    guard = IdempotencyGuard(store, ttl_seconds=30, metrics=metrics)

    await guard.begin("abc")

    assert await redis_client.get("idem:abc") == "1"
    assert 0 < await redis_client.ttl("idem:abc") <= 30


@pytest.mark.anyio
async def test_hold_rejects_concurrent_holder_and_counts_conflict(store, metrics, registry) -> None:
    guard = IdempotencyGuard(store, metrics=metrics)

    async with guard.hold("abc"):
        with pytest.raises(IdempotencyConflictError) as excinfo:
            async with guard.hold("abc"):
                pass  # pragma: no cover - never entered

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail == {"idempotency_key": "abc"}
    assert registry.get_sample_value("tokenfeed_idempotency_conflicts_total") == 1.0


@pytest.mark.anyio
async def test_hold_releases_lock_when_block_raises(store, redis_client, metrics) -> None:
    guard = IdempotencyGuard(store, metrics=metrics)

    with pytest.raises(RuntimeError):
        async with guard.hold("abc"):
            assert await redis_client.exists("idem:abc") == 1
            raise RuntimeError("handler failed")

    assert await redis_client.exists("idem:abc") == 0


@pytest.mark.anyio
async def test_hold_without_key_is_a_pass_through(store, redis_client, metrics) -> None:
    guard = IdempotencyGuard(store, metrics=metrics)

    async with guard.hold(None):
        assert await redis_client.dbsize() == 0


@pytest.mark.anyio
async def test_conflict_does_not_release_the_original_lock(store, redis_client, metrics) -> None:
    guard = IdempotencyGuard(store, metrics=metrics)
    await guard.begin("abc")

    with pytest.raises(IdempotencyConflictError):
        async with guard.hold("abc"):
            pass  # pragma: no cover - never entered

    assert await redis_client.exists("idem:abc") == 1


@pytest.mark.anyio
async def test_store_outage_surfaces_as_unavailable(offline_store, metrics) -> None:
    guard = IdempotencyGuard(offline_store, metrics=metrics)

    with pytest.raises(StoreUnavailableError):
        await guard.begin("abc")


@pytest.mark.anyio
async def test_release_failure_keeps_the_guarded_outcome(
    store, redis_client, redis_server, metrics
) -> None:
    guard = IdempotencyGuard(store, ttl_seconds=30, metrics=metrics)
    completed = False

    async with guard.hold("abc"):
        completed = True
        redis_server.connected = False

    redis_server.connected = True
    assert completed
    # The lock is left for its safety TTL instead of failing the request.
    assert 0 < await redis_client.ttl("idem:abc") <= 30
