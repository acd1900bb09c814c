"""tokenfeed CLI exposing the API server, the ingestion poller and store maintenance."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any, Awaitable, Callable, TypeVar

import click
from pydantic import ValidationError

from application.settings import ServiceSettings
from core.errors import TokenFeedError
from core.store.redis_store import KeySpace, RedisStore, build_redis_client
from core.tokens.feed import TokenFeedClient
from core.tokens.poller import FeedPoller
from core.tokens.repository import TokenRepository
from core.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CLIError(click.ClickException):
    """Base class for typed CLI failures with deterministic exit codes."""

    exit_code = 1


class ConfigError(CLIError):
    exit_code = 2


class StoreError(CLIError):
    exit_code = 3


def _load_settings() -> ServiceSettings:
    try:
        return ServiceSettings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration:\n{exc}") from exc


def _build_store(settings: ServiceSettings) -> RedisStore:
    client = build_redis_client(
        str(settings.redis.url), socket_timeout=settings.redis.socket_timeout_seconds
    )
    return RedisStore(client, keys=KeySpace(settings.redis.key_prefix))


def _build_feed(settings: ServiceSettings) -> TokenFeedClient:
    return TokenFeedClient(
        str(settings.poller.feed_url), timeout_seconds=settings.poller.timeout_seconds
    )


def _build_poller(
    settings: ServiceSettings, store: RedisStore, feed: TokenFeedClient
) -> FeedPoller:
    return FeedPoller(
        store,
        feed,
        chain=settings.poller.chain,
        interval_seconds=settings.poller.interval_seconds,
        token_ttl_seconds=settings.poller.token_ttl_seconds,
    )


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    try:
        return asyncio.run(coro_factory())  # type: ignore[arg-type]
    except TokenFeedError as exc:
        raise StoreError(str(exc)) from exc


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """tokenfeed: mirror an upstream token-profile feed into Redis and serve it."""

    settings = _load_settings()
    configure_logging(
        level=settings.api.log_level, use_json=settings.api.log_json, stream=sys.stderr
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--host", default=None, help="Interface to bind (defaults to TOKENFEED_API_HOST).")
@click.option("--port", type=int, default=None, help="Port to bind (defaults to TOKENFEED_API_PORT).")
@click.option(
    "--with-poller/--without-poller",
    default=None,
    help="Run the ingestion poller inside the API process.",
)
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, with_poller: bool | None) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn

    from application.api.service import create_app

    settings: ServiceSettings = ctx.obj["settings"]
    if with_poller is not None:
        settings = settings.model_copy(
            update={"poller": settings.poller.model_copy(update={"enabled": with_poller})}
        )
    app = create_app(settings)
    bind_host = host or settings.api.host
    bind_port = port or settings.api.port
    logger.info("api_starting", host=bind_host, port=bind_port, poller=settings.poller.enabled)
    uvicorn.run(app, host=bind_host, port=bind_port, log_config=None)


async def _poll_forever(settings: ServiceSettings) -> None:
    store = _build_store(settings)
    feed = _build_feed(settings)
    poller = _build_poller(settings, store, feed)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, poller.stop)
    try:
        await poller.run()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await feed.aclose()
        await store.aclose()


@cli.command()
@click.pass_context
def poll(ctx: click.Context) -> None:
    """Run the ingestion poller until SIGINT or SIGTERM."""

    settings: ServiceSettings = ctx.obj["settings"]
    _run(lambda: _poll_forever(settings))


async def _poll_once(settings: ServiceSettings) -> dict[str, Any]:
    store = _build_store(settings)
    feed = _build_feed(settings)
    try:
        report = await _build_poller(settings, store, feed).tick()
    finally:
        await feed.aclose()
        await store.aclose()
    return report.as_dict()


@cli.command("poll-once")
@click.pass_context
def poll_once(ctx: click.Context) -> None:
    """Run a single poll tick and print its report as JSON."""

    settings: ServiceSettings = ctx.obj["settings"]
    report = _run(lambda: _poll_once(settings))
    click.echo(json.dumps(report, sort_keys=True))
    if report["outcome"] == "failed":
        raise CLIError(f"Poll tick failed: {report['error']}")


async def _purge(settings: ServiceSettings) -> int:
    store = _build_store(settings)
    try:
        repository = TokenRepository(store)
        return await repository.purge()
    finally:
        await store.aclose()


@cli.command()
@click.option("--yes", is_flag=True, help="Confirm deletion without prompting.")
@click.pass_context
def purge(ctx: click.Context, yes: bool) -> None:
    """Delete all mirrored token records, recency indexes and the stored ETag."""

    if not yes:
        click.confirm("Delete every mirrored token record?", abort=True)
    settings: ServiceSettings = ctx.obj["settings"]
    removed = _run(lambda: _purge(settings))
    click.echo(f"[purge] removed {removed} keys")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
