"""Token profile models and their Redis hash / public JSON encodings."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.errors import MalformedFeedError

__all__ = [
    "TokenLink",
    "TokenProfile",
    "CreateTokenRequest",
    "ParsedFeed",
    "parse_profiles",
    "normalize_links",
    "profile_to_hash",
    "profile_from_hash",
]

# Hash field names mirror the upstream JSON attribute names.
_HASH_FIELDS = ("url", "icon", "header", "openGraph", "description")
LAST_SEEN_FIELD = "last_seen"
PROFILES_FIELD = "profiles"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class TokenLink(BaseModel):
    """A typed link attached to a token profile (website, twitter, ...)."""

    type: str = ""
    label: str | None = None
    url: str = ""

    model_config = ConfigDict(extra="ignore")

    blank_label = field_validator("label", mode="before")(_blank_to_none)

    @field_validator("type", "url", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def to_public(self) -> dict[str, str]:
        payload = {"type": self.type, "label": self.label, "url": self.url}
        return {key: value for key, value in payload.items() if value}


class TokenProfile(BaseModel):
    """Public token record, shaped like the upstream token-profile feed."""

    url: str | None = None
    chain_id: str = Field(..., alias="chainId", min_length=1)
    token_address: str = Field(..., alias="tokenAddress", min_length=1)
    icon: str | None = None
    header: str | None = None
    open_graph: str | None = Field(default=None, alias="openGraph")
    description: str | None = None
    links: list[TokenLink] = Field(default_factory=list)
    last_seen: int | None = Field(default=None, alias="lastSeen")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    blank_optional = field_validator(
        "url", "icon", "header", "open_graph", "description", mode="before"
    )(_blank_to_none)

    @field_validator("links", mode="before")
    @classmethod
    def null_links(cls, value: Any) -> Any:
        return [] if value is None else value

    def to_public(self, *, include_last_seen: bool = True) -> dict[str, Any]:
        """Serialise with empty optional fields omitted."""

        payload = self.model_dump(by_alias=True, exclude_none=True, exclude={"links"})
        if not include_last_seen:
            payload.pop("lastSeen", None)
        links = [link.to_public() for link in self.links]
        if links:
            payload["links"] = links
        return payload


class CreateTokenRequest(BaseModel):
    """Payload accepted by ``POST /tokens`` for manually registered tokens."""

    chain_id: str = Field(..., alias="chainId", min_length=1, max_length=64)
    token_address: str = Field(..., alias="tokenAddress", min_length=1, max_length=128)
    url: str | None = None
    icon: str | None = None
    header: str | None = None
    open_graph: str | None = Field(default=None, alias="openGraph")
    description: str | None = Field(default=None, max_length=4096)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_profile(self) -> TokenProfile:
        return TokenProfile.model_validate(self.model_dump(by_alias=True))


@dataclass(slots=True)
class ParsedFeed:
    """Profiles decoded from one upstream response body."""

    profiles: list[TokenProfile] = field(default_factory=list)
    invalid: int = 0


def _extract_entries(document: Any) -> list[Any]:
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        entries = document.get(PROFILES_FIELD)
        if isinstance(entries, list):
            return entries
    raise MalformedFeedError(
        "Feed body is neither a profile array nor an object with a profiles array",
        detail={"type": type(document).__name__},
    )


def parse_profiles(body: bytes | str | list[Any] | dict[str, Any]) -> ParsedFeed:
    """Decode an upstream body in either of its two accepted shapes.

    The feed publishes a bare array of profiles, but historical responses
    wrap the array in ``{"profiles": [...]}``. Entries that are not objects or
    lack ``chainId``/``tokenAddress`` are counted in ``invalid`` and dropped.
    """

    document: Any = body
    if isinstance(body, (bytes, str)):
        try:
            document = json.loads(body)
        except ValueError as exc:
            raise MalformedFeedError(f"Feed body is not valid JSON: {exc}") from exc

    parsed = ParsedFeed()
    for entry in _extract_entries(document):
        try:
            parsed.profiles.append(TokenProfile.model_validate(entry))
        except ValidationError:
            parsed.invalid += 1
    return parsed


def normalize_links(links: Iterable[TokenLink | Mapping[str, Any]]) -> list[TokenLink]:
    """Return links as ``TokenLink`` instances with blank labels dropped."""

    normalised: list[TokenLink] = []
    for link in links:
        if isinstance(link, TokenLink):
            normalised.append(TokenLink(type=link.type, label=link.label, url=link.url))
        else:
            normalised.append(TokenLink.model_validate(link))
    return normalised


def profile_to_hash(profile: TokenProfile, *, last_seen: int) -> dict[str, str | int]:
    """Encode *profile* as the full field mapping stored at ``token:<address>``."""

    links = [link.to_public() for link in normalize_links(profile.links)]
    return {
        "chainId": profile.chain_id,
        "tokenAddress": profile.token_address,
        "url": profile.url or "",
        "icon": profile.icon or "",
        "header": profile.header or "",
        "openGraph": profile.open_graph or "",
        "description": profile.description or "",
        "links": json.dumps(links, separators=(",", ":")),
        LAST_SEEN_FIELD: last_seen,
    }


def _decode_links(raw: str | None) -> list[TokenLink]:
    if not raw or raw == "[]":
        return []
    try:
        entries = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(entries, list):
        return []
    links: list[TokenLink] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            links.append(TokenLink.model_validate(entry))
        except ValidationError:
            continue
    return links


def profile_from_hash(mapping: Mapping[str, str]) -> TokenProfile | None:
    """Decode a stored hash; an empty or key-less hash means *not found*."""

    if not mapping or not mapping.get("tokenAddress"):
        return None
    last_seen_raw = mapping.get(LAST_SEEN_FIELD)
    try:
        last_seen = int(float(last_seen_raw)) if last_seen_raw else None
    except ValueError:
        last_seen = None
    return TokenProfile(
        chainId=mapping.get("chainId") or "unknown",
        tokenAddress=mapping["tokenAddress"],
        links=_decode_links(mapping.get("links")),
        lastSeen=last_seen,
        **{name: mapping.get(name) for name in _HASH_FIELDS},
    )
