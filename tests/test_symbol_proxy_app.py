from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from pydantic import SecretStr

from symcache.proxy import app as proxy_app
from symcache.proxy.app import create_app
from tests.utils.upstreams import BrokenStream, asgi_client


SYMBOL = "wntdll.pdb/F999943DF7FB4B8EB6D99F2B047BC3101/wntdll.pdb"


@pytest.fixture
def app(proxy_settings, network):
    return create_app(proxy_settings, transport=network.transport())


@pytest.mark.anyio
async def test_cache_hit_does_not_contact_upstreams(app, cache_root: Path, primary, fallback) -> None:
    entry = cache_root / SYMBOL
    entry.parent.mkdir(parents=True)
    entry.write_bytes(b"cached-pdb")
    hits_before = proxy_app.HIT_COUNTER.value

    async with asgi_client(app) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.status_code == 200
    assert response.content == b"cached-pdb"
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.headers["x-cache"] == "HIT"
    assert primary.requests == []
    assert fallback.requests == []
    assert proxy_app.HIT_COUNTER.value == hits_before + 1


@pytest.mark.anyio
async def test_miss_falls_back_to_second_upstream(app, cache_root: Path, primary, fallback) -> None:
    payload = b"RSDS" + bytes(range(256)) * 8
    fallback.files[SYMBOL] = payload

    async with asgi_client(app) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.headers["x-cache"] == "MISS"
    assert response.headers["x-symbol-source"] == "fallback"
    assert (cache_root / SYMBOL).read_bytes() == payload
    assert primary.methods_for(SYMBOL) == ["HEAD"]
    assert fallback.methods_for(SYMBOL) == ["HEAD", "GET"]


@pytest.mark.anyio
async def test_symbol_missing_everywhere_is_not_found(app, cache_root: Path, primary, fallback) -> None:
    async with asgi_client(app) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.status_code == 404
    assert not (cache_root / SYMBOL).exists()
    assert not (cache_root / SYMBOL).parent.exists()
    assert primary.methods_for(SYMBOL) == ["HEAD"]
    assert fallback.methods_for(SYMBOL) == ["HEAD"]


@pytest.mark.anyio
async def test_repeated_request_is_served_from_cache(app, primary) -> None:
    payload = bytes(reversed(range(256))) * 100
    primary.files[SYMBOL] = payload

    async with asgi_client(app) as client:
        first = await client.get(f"/{SYMBOL}")
        second = await client.get(f"/{SYMBOL}")

    assert first.content == payload
    assert second.content == first.content
    assert second.headers["x-cache"] == "HIT"
    assert primary.methods_for(SYMBOL) == ["HEAD", "GET"]


@pytest.mark.anyio
@pytest.mark.parametrize("size", [16 * 1024 - 1, 16 * 1024, 16 * 1024 + 1])
async def test_chunk_boundary_bodies_are_complete(app, cache_root: Path, primary, size: int) -> None:
    payload = bytes(index % 253 for index in range(size))
    primary.files[SYMBOL] = payload

    async with asgi_client(app) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-length"] == str(size)
    assert (cache_root / SYMBOL).read_bytes() == payload


@pytest.mark.anyio
async def test_parent_segments_are_rejected(app, tmp_path: Path, primary, fallback) -> None:
    async with asgi_client(app) as client:
        response = await client.get("/%2E%2E/%2E%2E/escaped.pdb")

    assert response.status_code == 400
    assert not (tmp_path / "escaped.pdb").exists()
    assert primary.requests == []
    assert fallback.requests == []


@pytest.mark.anyio
async def test_unreadable_cache_entry_is_server_error(app, cache_root: Path, primary) -> None:
    (cache_root / SYMBOL).mkdir(parents=True)
    primary.files[SYMBOL] = b"pdb"

    async with asgi_client(app) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.status_code == 500
    assert response.text.startswith("Error reading file")
    assert primary.requests == []


@pytest.mark.anyio
async def test_cache_creation_failure_is_server_error(app, cache_root: Path, primary) -> None:
    (cache_root / "wntdll.pdb").write_bytes(b"blocks the symbol directory")
    primary.files[SYMBOL] = b"pdb"

    async with asgi_client(app) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.status_code == 500
    assert response.text.startswith("Error creating file")


@pytest.mark.anyio
async def test_mid_stream_failure_leaves_no_cache_entry(app, cache_root: Path, primary, fallback) -> None:
    primary.files[SYMBOL] = b"x" * 40000
    primary.body_failures[SYMBOL] = lambda request: httpx.Response(200, stream=BrokenStream(b"x" * 20000))
    fallback.files[SYMBOL] = b"never used"

    async with asgi_client(app, raise_app_exceptions=False) as client:
        response = await client.get(f"/{SYMBOL}")

    assert response.content != b"x" * 40000
    assert not (cache_root / SYMBOL).exists()
    assert fallback.methods_for(SYMBOL) == []


@pytest.mark.anyio
async def test_healthz_and_status(app, cache_root: Path) -> None:
    async with asgi_client(app) as client:
        health = await client.get("/healthz")
        status_response = await client.get("/status")

    assert health.status_code == 200
    assert health.json()["checks"]["cache_writable"] is True
    body = status_response.json()
    assert body["cache_root"] == str(cache_root.resolve())
    assert body["chunk_size"] == 16 * 1024
    assert [upstream["name"] for upstream in body["upstreams"]] == ["primary", "fallback"]


@pytest.mark.anyio
async def test_metrics_allowed_from_loopback(app, primary) -> None:
    primary.files[SYMBOL] = b"pdb"
    async with asgi_client(app) as client:
        await client.get(f"/{SYMBOL}")
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert "symcache_requests_total" in response.text
    assert 'symcache_upstream_served_total{upstream="primary"}' in response.text


@pytest.mark.anyio
async def test_metrics_requires_token_when_configured(proxy_settings, network) -> None:
    proxy_settings.metrics_token = SecretStr("scrape-token")
    app = create_app(proxy_settings, transport=network.transport())

    async with asgi_client(app) as client:
        denied = await client.get("/metrics")
        allowed = await client.get("/metrics", headers={"Authorization": "Bearer scrape-token"})

    assert denied.status_code == 401
    assert allowed.status_code == 200


@pytest.mark.anyio
async def test_empty_segments_share_one_entry_and_upstream_url(app, cache_root: Path, primary) -> None:
    primary.files[SYMBOL] = b"pdb"
    doubled = SYMBOL.replace("/", "//")

    async with asgi_client(app) as client:
        first = await client.get(f"/{doubled}")
        second = await client.get(f"/{SYMBOL}/")

    assert first.status_code == 200
    assert first.content == b"pdb"
    assert second.headers["x-cache"] == "HIT"
    assert primary.methods_for(SYMBOL) == ["HEAD", "GET"]
    assert (cache_root / SYMBOL).read_bytes() == b"pdb"


@pytest.mark.anyio
async def test_temp_file_names_are_rejected(app, primary) -> None:
    async with asgi_client(app) as client:
        response = await client.get("/wntdll.pdb/GUID/.wntdll.pdb.0f3a9c.partial")

    assert response.status_code == 400
    assert primary.requests == []
