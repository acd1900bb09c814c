"""FastAPI application serving mirrored token profiles."""

from __future__ import annotations

import asyncio
import ipaddress
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from application.api.errors import (
    COMMON_ERROR_RESPONSES,
    ApiErrorCode,
    error_response,
    resolve_error_code,
)
from application.api.idempotency import (
    IdempotencyGuard,
    IdempotencyKeyError,
    validate_idempotency_key,
)
from application.api.rate_limit import TokenBucketRateLimiter, build_rate_limiter
from application.settings import ServiceSettings
from core.errors import IdempotencyConflictError, StoreUnavailableError, TokenFeedError
from core.store.redis_store import KeySpace, RedisStore, build_redis_client
from core.tokens.feed import TokenFeedClient
from core.tokens.models import CreateTokenRequest
from core.tokens.poller import FeedPoller
from core.tokens.repository import TokenRepository
from core.utils.clock import MillisClock, epoch_millis
from core.utils.logging import correlation_context, get_logger
from core.utils.metrics import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)

# Probes must stay reachable for orchestrators even when a client is throttled.
UNGUARDED_PATHS = frozenset({"/healthz", "/readyz", "/metrics"})
REQUEST_ID_HEADER = "X-Request-ID"


def _normalize_ip(raw: str | None) -> str | None:
    """Return a validated IP address extracted from header or peer data."""

    if raw is None:
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    candidate = candidate.split()[0].strip("[]")
    if "%" in candidate:
        candidate = candidate.split("%", 1)[0]
    # IPv4 with a port component, e.g. "203.0.113.9:443".
    if "." in candidate and candidate.count(":") == 1:
        host, _, port = candidate.rpartition(":")
        if port.isdigit():
            candidate = host
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate


class ClientAddressResolver:
    """Resolve the rate-limit identity of a request.

    The socket peer is the identity unless it belongs to ``trusted_proxies``.
    Requests relayed by a trusted proxy are keyed on the nearest untrusted hop
    of ``X-Forwarded-For``, falling back to ``X-Real-IP`` and then the peer.
    """

    def __init__(self, trusted_proxies: Iterable[str] = ()) -> None:
        self._networks = tuple(
            ipaddress.ip_network(entry, strict=False) for entry in trusted_proxies
        )

    def is_trusted(self, address: str | None) -> bool:
        normalized = _normalize_ip(address)
        if normalized is None or not self._networks:
            return False
        parsed = ipaddress.ip_address(normalized)
        return any(parsed in network for network in self._networks)

    def __call__(self, request: Request) -> str:
        peer = request.client.host if request.client and request.client.host else None
        if peer is None:
            return "unknown"
        if not self.is_trusted(peer):
            return peer

        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            hops = [_normalize_ip(part) for part in forwarded_for.split(",")]
            valid = [hop for hop in hops if hop is not None]
            for hop in reversed(valid):
                if not self.is_trusted(hop):
                    return hop
            if valid:
                return valid[0]

        real_ip = _normalize_ip(request.headers.get("x-real-ip"))
        if real_ip is not None:
            return real_ip
        return peer


class RequestGuardMiddleware(BaseHTTPMiddleware):
    """Apply rate limiting, then the idempotency lock, around each request."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        limiter: TokenBucketRateLimiter,
        guard: IdempotencyGuard,
        idempotency_header: str,
        resolve_identity: Callable[[Request], str] | None = None,
    ) -> None:
        super().__init__(app)
        self._resolve_identity = resolve_identity or ClientAddressResolver()
        self._limiter = limiter
        self._guard = guard
        self._idempotency_header = idempotency_header

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or None
        with correlation_context(request_id) as correlation_id:
            response = await self._guarded(request, call_next)
            response.headers[REQUEST_ID_HEADER] = correlation_id
            return response

    async def _guarded(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        if path in UNGUARDED_PATHS:
            return await call_next(request)

        try:
            await self._limiter.check(self._resolve_identity(request))
        except HTTPException as exc:
            return error_response(
                exc.status_code,
                path=path,
                message=str(exc.detail),
                headers=exc.headers,
            )
        except StoreUnavailableError as exc:
            return error_response(exc.status_code, path=path, code=ApiErrorCode.STORE_UNAVAILABLE)

        raw_key = request.headers.get(self._idempotency_header)
        key: str | None = None
        if raw_key is not None:
            try:
                key = validate_idempotency_key(raw_key)
            except IdempotencyKeyError as exc:
                return error_response(
                    status.HTTP_400_BAD_REQUEST,
                    path=path,
                    code=ApiErrorCode.IDEMPOTENCY_INVALID,
                    message=str(exc),
                )

        try:
            async with self._guard.hold(key):
                response = await call_next(request)
        except IdempotencyConflictError as exc:
            return error_response(
                exc.status_code,
                path=path,
                code=ApiErrorCode.IDEMPOTENCY_CONFLICT,
                message=str(exc),
            )
        except StoreUnavailableError as exc:
            return error_response(exc.status_code, path=path, code=ApiErrorCode.STORE_UNAVAILABLE)
        if key is not None:
            response.headers[self._idempotency_header] = key
        return response


def create_app(
    settings: ServiceSettings | None = None,
    *,
    store: RedisStore | None = None,
    feed_client: TokenFeedClient | None = None,
    clock: MillisClock = epoch_millis,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    """Build the tokenfeed FastAPI application.

    Args:
        settings: Service configuration; loaded from the environment when omitted.
        store: Pre-built Redis store. When omitted a client is created from
            ``settings.redis`` and closed on shutdown.
        feed_client: Upstream client for the in-process poller.
        clock: Millisecond clock shared by the limiter, repository and poller.
        metrics: Metrics collector; defaults to the process-wide collector.
    """

    resolved = settings or ServiceSettings()
    owns_store = store is None
    if store is None:
        store = RedisStore(
            build_redis_client(
                str(resolved.redis.url),
                socket_timeout=resolved.redis.socket_timeout_seconds,
            ),
            keys=KeySpace(resolved.redis.key_prefix),
        )
    collector = metrics or get_metrics_collector()
    limiter = build_rate_limiter(store, resolved.rate_limit, clock=clock, metrics=collector)
    guard = IdempotencyGuard(
        store, ttl_seconds=resolved.idempotency.ttl_seconds, metrics=collector
    )
    repository = TokenRepository(
        store, token_ttl_seconds=resolved.poller.token_ttl_seconds, clock=clock
    )
    api = resolved.api
    chain = resolved.poller.chain

    def _page_size(raw: str | None) -> int:
        """Resolve ``limit`` leniently: unparsable or out-of-range values use the default."""

        try:
            size = int(raw) if raw is not None else api.default_page_size
        except ValueError:
            return api.default_page_size
        if size < 1 or size > api.max_page_size:
            return api.default_page_size
        return size

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        poller: FeedPoller | None = None
        task: asyncio.Task[None] | None = None
        feed = feed_client
        if resolved.poller.enabled:
            feed = feed or TokenFeedClient(
                str(resolved.poller.feed_url),
                timeout_seconds=resolved.poller.timeout_seconds,
            )
            poller = FeedPoller(
                store,
                feed,
                chain=chain,
                interval_seconds=resolved.poller.interval_seconds,
                token_ttl_seconds=resolved.poller.token_ttl_seconds,
                clock=clock,
                metrics=collector,
            )
            task = asyncio.create_task(poller.run(), name="tokenfeed-poller")
        app.state.poller = poller
        try:
            yield
        finally:
            if poller is not None and task is not None:
                poller.stop()
                await task
            if feed is not None and feed_client is None:
                await feed.aclose()
            if owns_store:
                await store.aclose()

    app = FastAPI(
        title="tokenfeed",
        version="1.0.0",
        description="Rate-limited, idempotent mirror of an upstream token-profile feed.",
        lifespan=lifespan,
    )
    app.state.settings = resolved
    app.state.store = store
    app.state.repository = repository
    app.state.rate_limiter = limiter
    app.state.idempotency_guard = guard
    app.state.metrics = collector
    app.add_middleware(
        RequestGuardMiddleware,
        limiter=limiter,
        guard=guard,
        idempotency_header=resolved.idempotency.header_name,
        resolve_identity=ClientAddressResolver(resolved.api.trusted_proxies),
    )

    @app.get(
        "/token-profiles/latest/v1",
        tags=["feed"],
        summary="Latest token profiles of the configured chain",
        responses=COMMON_ERROR_RESPONSES,
    )
    async def latest_token_profiles() -> list[dict[str, Any]]:
        profiles = await repository.list_latest_by_chain(chain, 0, api.feed_page_size)
        return [profile.to_public(include_last_seen=False) for profile in profiles]

    @app.get(
        "/tokens",
        tags=["tokens"],
        summary="Recently seen tokens, newest first",
        responses=COMMON_ERROR_RESPONSES,
    )
    async def list_tokens(
        limit: str | None = Query(None),
        offset: int = Query(0, ge=0),
        chain_id: str | None = Query(None, alias="chain", min_length=1),
    ) -> list[dict[str, Any]]:
        size = _page_size(limit)
        if chain_id:
            profiles = await repository.list_latest_by_chain(chain_id, offset, size)
        else:
            profiles = await repository.list_latest(offset, size)
        return [profile.to_public() for profile in profiles]

    @app.get(
        "/feed/latest",
        tags=["feed"],
        summary="Latest token profiles across chains",
        responses=COMMON_ERROR_RESPONSES,
    )
    async def latest_feed(limit: str | None = Query(None)) -> list[dict[str, Any]]:
        profiles = await repository.list_latest(0, _page_size(limit))
        return [profile.to_public(include_last_seen=False) for profile in profiles]

    @app.get(
        "/token-profiles/latest/by-chain",
        tags=["feed"],
        summary="Latest token profiles of the configured chain, read from Redis only",
        responses=COMMON_ERROR_RESPONSES,
    )
    async def latest_by_chain(limit: str | None = Query(None)) -> list[dict[str, Any]]:
        # The chain is pinned to the poller's chain; a ``chain`` query is ignored.
        profiles = await repository.list_latest_by_chain(chain, 0, _page_size(limit))
        return [profile.to_public(include_last_seen=False) for profile in profiles]

    @app.get(
        "/tokens/{address}",
        tags=["tokens"],
        summary="Look up a single token by address",
        responses=COMMON_ERROR_RESPONSES,
    )
    async def get_token(address: str) -> dict[str, Any]:
        profile = await repository.get_by_address(address)
        if profile is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Token {address} not found.",
            )
        return profile.to_public()

    @app.post(
        "/tokens",
        tags=["tokens"],
        summary="Register a token manually",
        status_code=status.HTTP_201_CREATED,
        responses=COMMON_ERROR_RESPONSES,
    )
    async def create_token(payload: CreateTokenRequest) -> dict[str, Any]:
        profile = await repository.create(payload.to_profile())
        logger.info(
            "token_created", address=profile.token_address, chain=profile.chain_id
        )
        return profile.to_public()

    @app.get("/healthz", tags=["health"], summary="Liveness probe")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz", tags=["health"], summary="Readiness probe")
    async def readyz() -> JSONResponse:
        try:
            await store.ping()
        except StoreUnavailableError as exc:
            return error_response(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                path="/readyz",
                code=ApiErrorCode.STORE_UNAVAILABLE,
                message=str(exc),
            )
        return JSONResponse({"status": "ready", "tokens": await repository.count()})

    @app.get("/metrics", tags=["health"], summary="Prometheus metrics")
    async def prometheus_metrics() -> PlainTextResponse:
        return PlainTextResponse(collector.render(), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(
            422,
            path=request.url.path,
            code=ApiErrorCode.VALIDATION_FAILED,
            message="Invalid request parameters.",
            meta={"errors": [
                {key: error.get(key) for key in ("type", "loc", "msg")}
                for error in exc.errors()
            ]},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        detail = exc.detail
        code: ApiErrorCode | None = None
        message: str | None = None
        if isinstance(detail, dict):
            code = resolve_error_code(detail.get("code"), ApiErrorCode.INTERNAL)
            message = detail.get("message")
        elif isinstance(detail, str):
            message = detail
        return error_response(
            exc.status_code,
            path=request.url.path,
            code=code,
            message=message,
            headers=exc.headers,
        )

    @app.exception_handler(TokenFeedError)
    async def token_feed_error_handler(request: Request, exc: TokenFeedError) -> JSONResponse:
        logger.error(
            "request_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(
            exc.status_code,
            path=request.url.path,
            code=resolve_error_code(exc.code, ApiErrorCode.INTERNAL),
            message=str(exc),
        )

    return app


__all__ = ["ClientAddressResolver", "RequestGuardMiddleware", "UNGUARDED_PATHS", "create_app"]
