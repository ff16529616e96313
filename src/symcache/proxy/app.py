"""Symbol cache proxy serving debug symbols from local disk or upstream symbol servers."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from starlette.types import Send

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import SymbolProxySettings
from .errors import LocalIOError, SymbolProxyError, UpstreamsExhausted
from .fetcher import FallbackFetcher, FetchAttempt, FetchState, UpstreamTransfer, build_http_client
from .store import CacheWriter, ChunkSink, SymbolCacheStore


SERVICE_NAME = "symcache.proxy"
OCTET_STREAM = "application/octet-stream"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("symcache_requests_total", "Total symbol requests"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("symcache_cache_hits_total", "Symbols served from the local cache"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("symcache_cache_misses_total", "Symbols missing from the local cache"))
NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symcache_not_found_total", "Symbols not found on any upstream")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symcache_cache_bytes_served_total", "Bytes served from the local cache")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "symcache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Symbol proxy time to response start",
    )
)
TRACER = trace.get_tracer(SERVICE_NAME)


class SymbolProxyState:
    def __init__(
        self,
        settings: SymbolProxySettings,
        store: SymbolCacheStore,
        fetcher: FallbackFetcher,
        http_client: httpx.AsyncClient,
    ) -> None:
        self.settings = settings
        self.store = store
        self.fetcher = fetcher
        self.http_client = http_client
        self.logger = structlog.get_logger(SERVICE_NAME)


class ClientSink(ChunkSink):
    """Forwards chunks to the client connection as ASGI body messages."""

    name = "client"

    def __init__(self, send: Send) -> None:
        self._send = send

    async def write(self, chunk: bytes) -> None:
        await self._send({"type": "http.response.body", "body": chunk, "more_body": True})


class SymbolTransferResponse(StreamingResponse):
    """200 response whose body is teed from an upstream into the cache and the client."""

    def __init__(
        self,
        fetcher: FallbackFetcher,
        transfer: UpstreamTransfer,
        writer: CacheWriter,
        attempt: FetchAttempt,
    ) -> None:
        headers = {"X-Cache": "MISS", "X-Symbol-Source": transfer.upstream.name}
        if transfer.content_length is not None:
            headers["Content-Length"] = str(transfer.content_length)
        super().__init__(
            transfer.iter_chunks(fetcher.chunk_size),
            status_code=status.HTTP_200_OK,
            headers=headers,
            media_type=OCTET_STREAM,
        )
        self._fetcher = fetcher
        self._transfer = transfer
        self._writer = writer
        self._attempt = attempt

    async def stream_response(self, send: Send) -> None:
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        await self._fetcher.stream(
            self._transfer, self._writer, ClientSink(send), self._attempt, chunks=self.body_iterator
        )
        await send({"type": "http.response.body", "body": b"", "more_body": False})


def get_state(request: Request) -> SymbolProxyState:
    return request.app.state.symbol_state  # type: ignore[attr-defined]


def create_app(
    settings: Optional[SymbolProxySettings] = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or SymbolProxySettings()
    store = SymbolCacheStore(settings.cache_root)
    upstreams = settings.upstream_descriptors()
    configure_logging(
        SERVICE_NAME,
        settings.log_level,
        cache_root=str(store.root),
        upstreams=[upstream.name for upstream in upstreams],
    )
    tracer_provider = configure_tracing(SERVICE_NAME, settings)
    store.ensure_root()
    http_client = build_http_client(
        connect_timeout=settings.connect_timeout_seconds,
        read_timeout=settings.read_timeout_seconds,
        idle_timeout=settings.idle_timeout_seconds,
        max_idle_connections=settings.max_idle_connections,
        transport=transport,
    )
    fetcher = FallbackFetcher(http_client, upstreams, chunk_size=settings.chunk_size)
    state = SymbolProxyState(settings, store, fetcher, http_client)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        state.logger.info(
            "symbol_proxy_ready",
            upstreams=[upstream.base_url for upstream in fetcher.upstreams],
        )
        try:
            yield
        finally:
            await http_client.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app, tracer_provider)
    app.state.symbol_state = state

    @app.exception_handler(SymbolProxyError)
    async def handle_symbol_proxy_error(request: Request, exc: SymbolProxyError) -> PlainTextResponse:
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        state = request.app.state.symbol_state  # type: ignore[attr-defined]
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: SymbolProxyState = Depends(get_state)) -> dict:
        writable = state.store.is_writable()
        health = {"status": "healthy" if writable else "unhealthy", "checks": {"cache_writable": writable}}
        if not writable:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/status")
    async def status_probe(state: SymbolProxyState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(
            {
                "cache_root": str(state.store.root),
                "writable": state.store.is_writable(),
                "chunk_size": state.fetcher.chunk_size,
                "upstreams": [
                    {"name": upstream.name, "base_url": upstream.base_url} for upstream in state.fetcher.upstreams
                ],
            }
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: SymbolProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{symbol_path:path}", methods=["GET", "HEAD"])
    async def get_symbol(symbol_path: str, state: SymbolProxyState = Depends(get_state)) -> Response:
        REQUEST_COUNTER.inc()
        symbol_path = state.store.normalize(symbol_path)
        with TRACER.start_as_current_span("symbol_proxy.lookup", attributes={"symcache.symbol_path": symbol_path}) as span:
            data = await state.store.lookup(symbol_path)
            span.set_attribute("symcache.cache_hit", data is not None)
        if data is not None:
            HIT_COUNTER.inc()
            BYTES_SERVED_COUNTER.inc(len(data))
            state.logger.info("cache_hit", symbol_path=symbol_path, bytes=len(data))
            return Response(content=data, media_type=OCTET_STREAM, headers={"X-Cache": "HIT"})

        MISS_COUNTER.inc()
        state.logger.info("cache_miss", symbol_path=symbol_path)
        attempt = FetchAttempt(symbol_path)
        try:
            transfer = await state.fetcher.locate(symbol_path, attempt)
        except UpstreamsExhausted:
            NOT_FOUND_COUNTER.inc()
            raise

        try:
            writer = await state.store.open_writer(symbol_path)
        except LocalIOError:
            attempt.advance(FetchState.FAILED)
            await transfer.aclose()
            raise
        return SymbolTransferResponse(state.fetcher, transfer, writer, attempt)

    return app
