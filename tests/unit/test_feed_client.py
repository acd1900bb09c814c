from __future__ import annotations

import httpx
import pytest

from core.errors import UpstreamUnavailableError
from core.tokens.feed import TokenFeedClient
from tests.feeds import FEED_URL, FeedStub, make_profile


@pytest.mark.anyio
async def test_fetch_returns_body_and_etag(feed_stub: FeedStub) -> None:
    feed_stub.queue_json([make_profile("A1")], etag='W/"abc"')
    client = feed_stub.client()

    response = await client.fetch()

    assert response.not_modified is False
    assert response.etag == 'W/"abc"'
    assert b"A1" in response.body
    assert "If-None-Match" not in feed_stub.requests[0].headers
    assert str(feed_stub.requests[0].url) == FEED_URL


@pytest.mark.anyio
async def test_fetch_sends_validator_and_handles_not_modified(feed_stub: FeedStub) -> None:
    feed_stub.queue_not_modified()
    client = feed_stub.client()

    response = await client.fetch('"v1"')

    assert response.not_modified is True
    assert response.body == b""
    assert feed_stub.requests[0].headers["If-None-Match"] == '"v1"'


@pytest.mark.anyio
async def test_fetch_without_etag_header_reports_none(feed_stub: FeedStub) -> None:
    feed_stub.queue_json([])

    response = await feed_stub.client().fetch()

    assert response.etag is None


@pytest.mark.anyio
@pytest.mark.parametrize("status", [404, 429, 500, 503])
async def test_non_success_status_raises_upstream_error(feed_stub: FeedStub, status: int) -> None:
    feed_stub.queue_raw(b"upstream says no", status=status)

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        await feed_stub.client().fetch()

    assert excinfo.value.status == status
    assert excinfo.value.detail["body"] == "upstream says no"


@pytest.mark.anyio
async def test_transport_failure_raises_upstream_error(feed_stub: FeedStub) -> None:
    feed_stub.queue_error(httpx.ConnectError("connection refused"))

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        await feed_stub.client().fetch()

    assert excinfo.value.status is None
    assert excinfo.value.detail == {"url": FEED_URL}


@pytest.mark.anyio
async def test_aclose_leaves_injected_client_open(feed_stub: FeedStub) -> None:
    injected = httpx.AsyncClient(transport=httpx.MockTransport(feed_stub.handler))
    client = TokenFeedClient(FEED_URL, client=injected)

    await client.aclose()

    assert injected.is_closed is False
    await injected.aclose()


@pytest.mark.anyio
async def test_aclose_closes_owned_client() -> None:
    client = TokenFeedClient(FEED_URL, timeout_seconds=1.0)

    await client.aclose()

    assert client._client.is_closed is True
