"""Resolve cache misses against an ordered list of upstream symbol servers.

Each upstream is probed with ``HEAD`` before its body is requested, so every
fallback decision is made before the client sees a status line. Once an
upstream body starts flowing it is written chunk by chunk to the cache and then
to the client; a failure from that point on ends the request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional, Sequence

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import Upstream
from .errors import (
    FetchTransportError,
    LocalIOError,
    MidStreamError,
    ProbeFailure,
    UpstreamError,
    UpstreamsExhausted,
)
from .store import CacheWriter, ChunkSink


LOGGER = structlog.get_logger("symcache.fetcher")
TRACER = trace.get_tracer("symcache.fetcher")

DEFAULT_CHUNK_SIZE = 16 * 1024

UPSTREAM_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symcache_upstream_served_total", "Symbols served from an upstream", label="upstream")
)
UPSTREAM_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symcache_upstream_failures_total", "Upstream probe or fetch failures", label="upstream")
)
BYTES_FETCHED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symcache_bytes_fetched_total", "Bytes streamed from upstreams")
)
MID_STREAM_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("symcache_mid_stream_failures_total", "Transfers aborted after the response started")
)


class FetchState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    PROBE_FAILED = "probe_failed"
    FETCHING = "fetching"
    STREAMING = "streaming"
    SUCCESS = "success"
    FAILED = "failed"
    NOT_FOUND = "not_found"


TERMINAL_STATES = frozenset({FetchState.SUCCESS, FetchState.FAILED, FetchState.NOT_FOUND})

_TRANSITIONS: dict[FetchState, frozenset[FetchState]] = {
    FetchState.IDLE: frozenset({FetchState.PROBING, FetchState.NOT_FOUND, FetchState.FAILED}),
    FetchState.PROBING: frozenset({FetchState.FETCHING, FetchState.PROBE_FAILED}),
    FetchState.FETCHING: frozenset({FetchState.STREAMING, FetchState.PROBE_FAILED, FetchState.FAILED}),
    FetchState.PROBE_FAILED: frozenset({FetchState.PROBING, FetchState.NOT_FOUND}),
    FetchState.STREAMING: frozenset({FetchState.SUCCESS, FetchState.FAILED}),
    FetchState.SUCCESS: frozenset(),
    FetchState.FAILED: frozenset(),
    FetchState.NOT_FOUND: frozenset(),
}


@dataclass
class FetchAttempt:
    """Progress of one cache miss through the fallback state machine."""

    symbol_path: str
    state: FetchState = FetchState.IDLE
    upstream: Optional[Upstream] = None
    history: list[tuple[FetchState, Optional[str]]] = field(default_factory=list)
    failures: list[UpstreamError] = field(default_factory=list)
    bytes_streamed: int = 0

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: FetchState, upstream: Optional[Upstream] = None) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid fetch transition {self.state.value} -> {state.value}")
        if upstream is not None:
            self.upstream = upstream
        self.state = state
        self.history.append((state, self.upstream.name if self.upstream else None))


@dataclass
class UpstreamTransfer:
    """An upstream response whose body has not been consumed yet."""

    upstream: Upstream
    url: str
    response: httpx.Response

    @property
    def content_length(self) -> Optional[int]:
        value = self.response.headers.get("content-length")
        if value is None or self.response.headers.get("content-encoding", "identity") != "identity":
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def iter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        # Raw bytes: the body is stored exactly as the upstream sent it.
        return self.response.aiter_raw(chunk_size)

    async def aclose(self) -> None:
        await self.response.aclose()


async def tee_stream(chunks: AsyncIterator[bytes], sinks: Sequence[ChunkSink]) -> int:
    """Write every chunk to each sink in order before pulling the next one."""

    total = 0
    try:
        async for chunk in chunks:
            for sink in sinks:
                try:
                    await sink.write(chunk)
                except Exception as exc:  # noqa: BLE001
                    raise MidStreamError(f"Error writing to {sink.name}: {exc}") from exc
            total += len(chunk)
    except httpx.HTTPError as exc:
        raise MidStreamError(f"Error reading file: {exc}") from exc
    return total


def build_http_client(
    *,
    connect_timeout: float = 10.0,
    read_timeout: float = 60.0,
    idle_timeout: float = 30.0,
    max_idle_connections: int = 10,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
    limits = httpx.Limits(max_keepalive_connections=max_idle_connections, keepalive_expiry=idle_timeout)
    return httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=True, transport=transport)


class FallbackFetcher:
    """Tries upstreams strictly in the configured order."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstreams: Sequence[Upstream],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._client = client
        self._upstreams = tuple(upstreams)
        self._chunk_size = chunk_size

    @property
    def upstreams(self) -> tuple[Upstream, ...]:
        return self._upstreams

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    async def probe(self, upstream: Upstream, url: str, symbol_path: str) -> None:
        with TRACER.start_as_current_span(
            "symbol_proxy.probe", attributes={"symcache.upstream": upstream.name, "symcache.symbol_path": symbol_path}
        ) as span:
            try:
                response = await self._client.head(url)
            except httpx.HTTPError as exc:
                raise ProbeFailure(
                    f"Probe failed: {exc}", upstream=upstream.name, symbol_path=symbol_path
                ) from exc
            span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                raise ProbeFailure(
                    f"Probe returned {response.status_code}", upstream=upstream.name, symbol_path=symbol_path
                )

    async def open(self, upstream: Upstream, url: str, symbol_path: str) -> httpx.Response:
        request = self._client.build_request("GET", url, headers={"Accept-Encoding": "identity"})
        with TRACER.start_as_current_span(
            "symbol_proxy.fetch", attributes={"symcache.upstream": upstream.name, "symcache.symbol_path": symbol_path}
        ) as span:
            try:
                response = await self._client.send(request, stream=True)
            except httpx.HTTPError as exc:
                raise FetchTransportError(
                    f"Error requesting body: {exc}", upstream=upstream.name, symbol_path=symbol_path
                ) from exc
            span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                await response.aclose()
                raise FetchTransportError(
                    f"Fetch returned {response.status_code}", upstream=upstream.name, symbol_path=symbol_path
                )
            return response

    async def locate(self, symbol_path: str, attempt: FetchAttempt) -> UpstreamTransfer:
        """Probe and open upstreams in order; raise :class:`UpstreamsExhausted` when none has the symbol."""

        for upstream in self._upstreams:
            url = upstream.url_for(symbol_path)
            attempt.advance(FetchState.PROBING, upstream)
            try:
                await self.probe(upstream, url, symbol_path)
                attempt.advance(FetchState.FETCHING)
                response = await self.open(upstream, url, symbol_path)
            except UpstreamError as exc:
                attempt.advance(FetchState.PROBE_FAILED)
                attempt.failures.append(exc)
                UPSTREAM_FAILURE_COUNTER.inc(label_value=upstream.name)
                event = "upstream_fetch_failed" if isinstance(exc, FetchTransportError) else "upstream_probe_failed"
                LOGGER.info(event, upstream=upstream.name, symbol_path=symbol_path, reason=exc.message)
                continue
            return UpstreamTransfer(upstream=upstream, url=url, response=response)

        attempt.advance(FetchState.NOT_FOUND)
        LOGGER.info("upstreams_exhausted", symbol_path=symbol_path, tried=len(attempt.failures))
        raise UpstreamsExhausted("404 page not found", symbol_path=symbol_path, failures=attempt.failures)

    async def stream(
        self,
        transfer: UpstreamTransfer,
        cache: CacheWriter,
        client: ChunkSink,
        attempt: FetchAttempt,
        chunks: Optional[AsyncIterator[bytes]] = None,
    ) -> int:
        """Tee the upstream body into ``cache`` then ``client`` and publish the cache entry."""

        if chunks is None:
            chunks = transfer.iter_chunks(self._chunk_size)
        attempt.advance(FetchState.STREAMING)
        try:
            total = await tee_stream(chunks, [cache, client])
            await cache.commit()
        except (MidStreamError, LocalIOError) as exc:
            cache.abort()
            attempt.advance(FetchState.FAILED)
            MID_STREAM_FAILURE_COUNTER.inc()
            LOGGER.error(
                "mid_stream_error",
                upstream=transfer.upstream.name,
                symbol_path=attempt.symbol_path,
                bytes_streamed=cache.bytes_written,
                error=exc.message,
            )
            if isinstance(exc, MidStreamError):
                raise
            raise MidStreamError(exc.message, symbol_path=attempt.symbol_path) from exc
        except BaseException:
            cache.abort()
            raise
        finally:
            await transfer.aclose()

        attempt.bytes_streamed = total
        attempt.advance(FetchState.SUCCESS)
        UPSTREAM_SERVED_COUNTER.inc(label_value=transfer.upstream.name)
        BYTES_FETCHED_COUNTER.inc(total)
        LOGGER.info("upstream_served", upstream=transfer.upstream.name, symbol_path=attempt.symbol_path, bytes=total)
        return total
