"""HTTP client for the upstream token-profile feed with conditional fetches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from core.errors import UpstreamUnavailableError
from core.utils.logging import get_logger

logger = get_logger(__name__)

__all__ = ["FeedResponse", "TokenFeedClient", "DEFAULT_FEED_URL"]

DEFAULT_FEED_URL = "https://api.dexscreener.com/token-profiles/latest/v1"

# Upstream error bodies are echoed into logs; keep them short.
_ERROR_BODY_LIMIT = 512


@dataclass(frozen=True, slots=True)
class FeedResponse:
    """Result of a conditional GET against the feed.

    ``not_modified`` responses carry no body; fresh responses carry the raw
    body and, when the upstream sent one, a new validation token.
    """

    not_modified: bool
    body: bytes = b""
    etag: Optional[str] = None


class TokenFeedClient:
    """Issue ``If-None-Match`` requests against the configured feed URL."""

    def __init__(
        self,
        url: str = DEFAULT_FEED_URL,
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
        )

    @property
    def url(self) -> str:
        return self._url

    async def fetch(self, etag: Optional[str] = None) -> FeedResponse:
        """Fetch the feed, revalidating against *etag* when one is known."""

        headers = {"If-None-Match": etag} if etag else {}
        try:
            response = await self._client.get(self._url, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(
                f"Feed request failed: {exc}", detail={"url": self._url}
            ) from exc

        if response.status_code == httpx.codes.NOT_MODIFIED:
            logger.debug("feed_not_modified", url=self._url, etag=etag)
            return FeedResponse(not_modified=True, etag=etag)

        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Feed responded with HTTP {response.status_code}",
                status=response.status_code,
                detail={"url": self._url, "body": response.text[:_ERROR_BODY_LIMIT]},
            )

        new_etag = response.headers.get("ETag") or None
        logger.debug(
            "feed_fetched", url=self._url, bytes=len(response.content), etag=new_etag
        )
        return FeedResponse(not_modified=False, body=response.content, etag=new_etag)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
