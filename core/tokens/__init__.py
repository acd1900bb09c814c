"""Token profile ingestion and read models."""

from .feed import DEFAULT_FEED_URL, FeedResponse, TokenFeedClient
from .models import (
    CreateTokenRequest,
    ParsedFeed,
    TokenLink,
    TokenProfile,
    parse_profiles,
    profile_from_hash,
    profile_to_hash,
)
from .poller import FeedPoller, TickOutcome, TickReport
from .repository import TokenRepository

__all__ = [
    "DEFAULT_FEED_URL",
    "CreateTokenRequest",
    "FeedPoller",
    "FeedResponse",
    "ParsedFeed",
    "TickOutcome",
    "TickReport",
    "TokenFeedClient",
    "TokenLink",
    "TokenProfile",
    "TokenRepository",
    "parse_profiles",
    "profile_from_hash",
    "profile_to_hash",
]
