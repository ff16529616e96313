"""Failure types raised while serving a symbol request."""

from __future__ import annotations

from fastapi import status


class SymbolProxyError(Exception):
    """Base class; ``status_code`` is the response sent when raised before streaming starts."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, symbol_path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.symbol_path = symbol_path


class InvalidSymbolPath(SymbolProxyError):
    status_code = status.HTTP_400_BAD_REQUEST


class CacheReadError(SymbolProxyError):
    """A cache entry exists but could not be read."""


class LocalIOError(SymbolProxyError):
    """The cache directory or file could not be created."""


class UpstreamError(SymbolProxyError):
    def __init__(self, message: str, *, upstream: str, symbol_path: str | None = None) -> None:
        super().__init__(message, symbol_path=symbol_path)
        self.upstream = upstream


class ProbeFailure(UpstreamError):
    """The upstream does not have the file, or could not be reached for the probe."""

    status_code = status.HTTP_404_NOT_FOUND


class FetchTransportError(UpstreamError):
    """The body request could not be established; handled like a probe failure."""

    status_code = status.HTTP_404_NOT_FOUND


class UpstreamsExhausted(SymbolProxyError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str, *, symbol_path: str | None = None, failures: list[UpstreamError] | None = None):
        super().__init__(message, symbol_path=symbol_path)
        self.failures = list(failures or [])


class MidStreamError(SymbolProxyError):
    """A read or write failed after the response status was sent."""
