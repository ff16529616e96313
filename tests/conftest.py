from __future__ import annotations

from pathlib import Path

import pytest

from symcache.common.settings import SymbolProxySettings
from tests.utils.upstreams import FakeSymbolServer, UpstreamNetwork


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def primary() -> FakeSymbolServer:
    return FakeSymbolServer("primary.test")


@pytest.fixture
def fallback() -> FakeSymbolServer:
    return FakeSymbolServer("fallback.test")


@pytest.fixture
def network(primary: FakeSymbolServer, fallback: FakeSymbolServer) -> UpstreamNetwork:
    return UpstreamNetwork(primary, fallback)


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def proxy_settings(cache_root: Path, primary: FakeSymbolServer, fallback: FakeSymbolServer) -> SymbolProxySettings:
    return SymbolProxySettings(
        cache_root=cache_root,
        upstreams=[f"primary={primary.base_url}", f"fallback={fallback.base_url}"],
        log_level="DEBUG",
    )
