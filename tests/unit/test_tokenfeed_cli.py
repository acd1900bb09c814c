from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import Any

import fakeredis
import fakeredis.aioredis
import pytest
from click.testing import CliRunner

import cli.tokenfeed_cli as tokenfeed_cli
from application.settings import PollerSettings, ServiceSettings
from cli.tokenfeed_cli import cli
from core.store.redis_store import KeySpace, RedisStore
from tests.feeds import FeedStub, make_profile


@pytest.fixture(autouse=True)
def _isolated_cli(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("TOKENFEED_"):
            monkeypatch.delenv(name, raising=False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def fake_backend(monkeypatch: pytest.MonkeyPatch, redis_server, feed_stub: FeedStub):
    """Point the CLI at an in-process Redis and a scripted upstream."""

    def build_store(settings) -> RedisStore:
        client = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
        return RedisStore(client, keys=KeySpace(settings.redis.key_prefix))

    monkeypatch.setattr(tokenfeed_cli, "_build_store", build_store)
    monkeypatch.setattr(tokenfeed_cli, "_build_feed", lambda settings: feed_stub.client())
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


def _last_json_line(output: str) -> dict[str, Any]:
    return json.loads(output.strip().splitlines()[-1])


def test_poll_once_ingests_and_prints_report(fake_backend, feed_stub: FeedStub) -> None:
    feed_stub.queue_json(
        [make_profile("A1"), make_profile("B2", chain="base")], etag='"v1"'
    )

    result = CliRunner().invoke(cli, ["poll-once"])

    assert result.exit_code == 0, result.output
    report = _last_json_line(result.output)
    assert report["outcome"] == "updated"
    assert report["accepted"] == 1
    assert report["filtered"] == 1
    assert fake_backend.exists("token:A1") == 1
    assert fake_backend.get("dex:latest:etag") == '"v1"'


def test_poll_once_honours_chain_setting(
    fake_backend, feed_stub: FeedStub, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TOKENFEED_POLLER_CHAIN", "base")
    feed_stub.queue_json([make_profile("A1"), make_profile("B2", chain="base")])

    result = CliRunner().invoke(cli, ["poll-once"])

    assert result.exit_code == 0, result.output
    assert fake_backend.zrange("z:tokens:latest", 0, -1) == ["B2"]


def test_poll_once_reports_failed_tick(fake_backend, feed_stub: FeedStub) -> None:
    feed_stub.queue_raw(b"down", status=503)

    result = CliRunner().invoke(cli, ["poll-once"])

    assert result.exit_code == 1
    assert '"outcome": "failed"' in result.output
    assert "Poll tick failed" in result.output


def test_purge_requires_confirmation(fake_backend) -> None:
    fake_backend.hset("token:A1", mapping={"tokenAddress": "A1"})

    result = CliRunner().invoke(cli, ["purge"], input="n\n")

    assert result.exit_code == 1
    assert fake_backend.exists("token:A1") == 1


def test_purge_with_yes_removes_mirror(fake_backend) -> None:
    fake_backend.hset("token:A1", mapping={"tokenAddress": "A1"})
    fake_backend.zadd("z:tokens:latest", {"A1": 1})
    fake_backend.set("dex:latest:etag", '"v1"')

    result = CliRunner().invoke(cli, ["purge", "--yes"])

    assert result.exit_code == 0, result.output
    assert "[purge] removed 3 keys" in result.output
    assert fake_backend.dbsize() == 0


def test_store_outage_maps_to_store_error(fake_backend, redis_server) -> None:
    redis_server.connected = False

    result = CliRunner().invoke(cli, ["purge", "--yes"])

    assert result.exit_code == tokenfeed_cli.StoreError.exit_code


def test_invalid_configuration_exits_with_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOKENFEED_RATE_BURST", "0")

    result = CliRunner().invoke(cli, ["poll-once"])

    assert result.exit_code == tokenfeed_cli.ConfigError.exit_code
    assert "Invalid configuration" in result.output


def test_serve_builds_app_and_runs_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_run(app, **kwargs: Any) -> None:
        captured["app"] = app
        captured.update(kwargs)

    monkeypatch.setattr("uvicorn.run", fake_run)

    result = CliRunner().invoke(cli, ["serve", "--port", "8080", "--with-poller"])

    assert result.exit_code == 0, result.output
    assert captured["port"] == 8080
    assert captured["host"] == "0.0.0.0"
    assert captured["app"].state.settings.poller.enabled is True
    assert captured["app"].title == "tokenfeed"


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(cli, ["--help"])

    assert result.exit_code == 0
    for command in ("serve", "poll", "poll-once", "purge"):
        assert command in result.output


@pytest.mark.anyio
async def test_poll_loop_stops_on_sigterm(fake_backend, feed_stub: FeedStub) -> None:
    feed_stub.queue_json([make_profile("A1")], etag='"v1"')
    settings = ServiceSettings(poller=PollerSettings(interval_seconds=0.01))

    task = asyncio.create_task(tokenfeed_cli._poll_forever(settings))
    for _ in range(200):
        if feed_stub.requests:
            break
        await asyncio.sleep(0.01)
    os.kill(os.getpid(), signal.SIGTERM)
    await asyncio.wait_for(task, timeout=2.0)

    assert fake_backend.exists("token:A1") == 1
