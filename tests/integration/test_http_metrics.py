from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import httpx
import pytest

from assets_resolver import load_config
from assets_resolver.server import SERVER, _assets_resolve_schema_impl, initialize_app, shutdown_app
from assets_resolver.transports.http import HttpTransportConfig, build_app

BASE_ENV = {
    "ATLASSIAN_HOST": "https://example.atlassian.net",
    "ATLASSIAN_EMAIL": "bot@example.com",
    "ATLASSIAN_API_TOKEN": "secret-token",
    "ATLASSIAN_ASSETS_CACHE_SWEEP_INTERVAL": "0",
}


@asynccontextmanager
async def _http_test_client(tmp_path: Path, fake_client, *, enable_metrics: bool) -> AsyncIterator[httpx.AsyncClient]:
    argv = [
        "--enable-http",
        "true",
        "--enable-metrics",
        "true" if enable_metrics else "false",
        "--cache-dir",
        str(tmp_path / "cache"),
    ]
    config = load_config(argv=argv, environ=BASE_ENV)
    initialize_app(config, client=fake_client)
    try:
        http_config = HttpTransportConfig(
            host="127.0.0.1",
            port=0,
            http_path=config.http_path,
            metrics_path=config.metrics_path,
            enable_metrics=config.enable_metrics,
        )
        app = build_app(SERVER, http_config)
        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                yield client
    finally:
        shutdown_app()


@pytest.mark.asyncio
async def test_metrics_endpoint_reports_counts(tmp_path: Path, fake_client) -> None:
    async with _http_test_client(tmp_path, fake_client, enable_metrics=True) as client:
        await _assets_resolve_schema_impl(name="Facilities")
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert 'assets_resolver_ops_total{op="resolve_schema"} 1' in body
    assert 'assets_resolver_entities_current{kind="schemas"} 2' in body
    assert 'assets_resolver_entities_current{kind="object_types"} 4' in body
    assert 'assets_resolver_cache_events_total{event="network_refresh"} 1' in body
    assert "assets_resolver_cache_stale 0" in body


@pytest.mark.asyncio
async def test_metrics_route_absent_when_disabled(tmp_path: Path, fake_client) -> None:
    async with _http_test_client(tmp_path, fake_client, enable_metrics=False) as client:
        response = await client.get("/metrics")

    assert response.status_code == 404
