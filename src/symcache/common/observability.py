"""Logging and tracing for the symbol cache proxy.

Every log line is a single JSON object carrying the proxy's ``service`` name
plus whatever process-wide context the caller binds (cache root, upstream
order). Spans stay in memory unless an OTLP endpoint is configured.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asgi import OpenTelemetryMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars, clear_contextvars

from .settings import SymbolProxySettings


_root_handler_installed = False
_httpx_instrumented = False


def log_level_number(level: Optional[str]) -> int:
    """Map a level name such as ``"debug"`` to its number; unknown names mean INFO."""

    if level:
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: Optional[str] = None, **context: Any) -> None:
    """Render structlog events as JSON lines and bind ``service`` plus ``context`` to all of them."""

    global _root_handler_installed
    numeric_level = log_level_number(level)
    if _root_handler_installed:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _root_handler_installed = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    clear_contextvars()
    bind_contextvars(service=service_name, **context)


def parse_otlp_headers(headers: Optional[str]) -> Dict[str, str]:
    """Parse ``key=value,key=value`` into exporter headers."""

    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def _span_exporter(settings: SymbolProxySettings) -> SpanExporter:
    if settings.otel_exporter_endpoint:
        return OTLPSpanExporter(
            endpoint=settings.otel_exporter_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_headers),
        )
    return InMemorySpanExporter()


def configure_tracing(service_name: str, settings: SymbolProxySettings) -> trace.TracerProvider:
    """Install the process tracer provider once and instrument outgoing httpx calls."""

    global _httpx_instrumented
    provider = trace.get_tracer_provider()
    if not isinstance(provider, TracerProvider):
        ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
        provider = TracerProvider(
            resource=Resource.create({"service.name": service_name}),
            sampler=TraceIdRatioBased(ratio),
        )
        exporter = _span_exporter(settings)
        if isinstance(exporter, InMemorySpanExporter):
            provider.add_span_processor(SimpleSpanProcessor(exporter))
        else:
            provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True
    return provider


def instrument_fastapi_app(app, tracer_provider: Optional[trace.TracerProvider] = None) -> None:
    """Trace every request the app serves."""

    tracer_provider = tracer_provider or trace.get_tracer_provider()
    FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)
    # Some instrumentation releases wrap build_middleware_stack without registering a middleware.
    if not any(getattr(m.cls, "__name__", "") == "OpenTelemetryMiddleware" for m in app.user_middleware):
        app.add_middleware(OpenTelemetryMiddleware, tracer_provider=tracer_provider)
