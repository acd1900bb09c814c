"""Tests for token profile decoding and encoding."""
from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from core.errors import MalformedFeedError
from core.tokens.models import (
    CreateTokenRequest,
    TokenLink,
    TokenProfile,
    normalize_links,
    parse_profiles,
    profile_from_hash,
    profile_to_hash,
)
from tests.feeds import make_profile


def test_parse_profiles_accepts_bare_array() -> None:
    body = json.dumps([make_profile("A1"), make_profile("B2", chain="base")]).encode()

    parsed = parse_profiles(body)

    assert [profile.token_address for profile in parsed.profiles] == ["A1", "B2"]
    assert parsed.profiles[1].chain_id == "base"
    assert parsed.invalid == 0


def test_parse_profiles_accepts_wrapped_array() -> None:
    parsed = parse_profiles(json.dumps({"profiles": [make_profile("A1")]}))

    assert len(parsed.profiles) == 1
    assert parsed.profiles[0].links == [TokenLink(type="twitter", url="https://x.com/A1")]


def test_parse_profiles_counts_unusable_entries() -> None:
    entries = [
        make_profile("A1"),
        {"chainId": "solana"},
        {"tokenAddress": "X"},
        "not-an-object",
        make_profile("", chain="solana"),
    ]

    parsed = parse_profiles(entries)

    assert [profile.token_address for profile in parsed.profiles] == ["A1"]
    assert parsed.invalid == 4


@pytest.mark.parametrize(
    "body",
    [b"{not json", b'{"data": []}', b'"just a string"', b"42", b'{"profiles": {"a": 1}}'],
)
def test_parse_profiles_rejects_malformed_documents(body: bytes) -> None:
    with pytest.raises(MalformedFeedError):
        parse_profiles(body)


def test_profile_ignores_unknown_upstream_fields() -> None:
    profile = TokenProfile.model_validate(make_profile("A1", totalAmount=5, extra={"x": 1}))

    assert profile.token_address == "A1"
    assert "totalAmount" not in profile.to_public()


def test_to_public_omits_empty_fields() -> None:
    profile = TokenProfile.model_validate(
        {
            "chainId": "solana",
            "tokenAddress": "A1",
            "icon": "",
            "description": "   ",
            "links": None,
            "lastSeen": 10,
        }
    )

    assert profile.to_public() == {"chainId": "solana", "tokenAddress": "A1", "lastSeen": 10}
    assert profile.to_public(include_last_seen=False) == {
        "chainId": "solana",
        "tokenAddress": "A1",
    }


def test_links_drop_blank_labels() -> None:
    links = normalize_links(
        [{"type": "website", "label": " ", "url": "https://a.test"}, TokenLink(label="Docs")]
    )

    assert links[0].label is None
    assert links[0].to_public() == {"type": "website", "url": "https://a.test"}
    assert links[1].to_public() == {"label": "Docs"}


def test_hash_encoding_stores_every_field_as_text() -> None:
    profile = TokenProfile.model_validate(
        make_profile("A1", links=[{"type": "twitter", "label": "", "url": "https://x.com/a"}])
    )

    mapping = profile_to_hash(profile, last_seen=1_700_000_000_000)

    assert mapping["header"] == ""
    assert mapping["openGraph"] == ""
    assert mapping["links"] == '[{"type":"twitter","url":"https://x.com/a"}]'
    assert mapping["last_seen"] == 1_700_000_000_000

    decoded = profile_from_hash({key: str(value) for key, value in mapping.items()})

    assert decoded is not None
    assert decoded.last_seen == 1_700_000_000_000
    assert decoded.header is None
    assert decoded.to_public(include_last_seen=False) == profile.to_public()


@pytest.mark.parametrize("mapping", [{}, {"chainId": "solana"}, {"tokenAddress": ""}])
def test_profile_from_hash_treats_incomplete_hash_as_missing(mapping: dict[str, str]) -> None:
    assert profile_from_hash(mapping) is None


def test_profile_from_hash_tolerates_corrupt_links_and_timestamp() -> None:
    decoded = profile_from_hash(
        {"chainId": "solana", "tokenAddress": "A1", "links": "{oops", "last_seen": "soon"}
    )

    assert decoded is not None
    assert decoded.links == []
    assert decoded.last_seen is None


def test_create_request_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationError):
        CreateTokenRequest.model_validate(
            {"chainId": "solana", "tokenAddress": "A1", "links": []}
        )


def test_create_request_builds_profile() -> None:
    request = CreateTokenRequest.model_validate(
        {"chainId": "solana", "tokenAddress": "A1", "description": "manual"}
    )

    profile = request.to_profile()

    assert profile.description == "manual"
    assert profile.links == []
    assert profile.last_seen is None
