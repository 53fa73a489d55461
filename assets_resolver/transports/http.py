"""Streamable HTTP transport served by uvicorn."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import uvicorn
from fastmcp import FastMCP
from fastmcp.utilities.logging import temporary_log_level
from starlette.applications import Starlette

from ..logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class HttpTransportConfig:
    host: str
    port: int
    http_path: str
    metrics_path: str
    enable_metrics: bool
    socket_path: Path | None = None


def describe_routes(config: HttpTransportConfig) -> Mapping[str, str]:
    """Return a mapping of logical endpoints to their configured paths."""

    routes = {"http": _normalise_path(config.http_path)}
    if config.enable_metrics:
        routes["metrics"] = _normalise_path(config.metrics_path)
    return routes


def build_app(server: FastMCP, config: HttpTransportConfig) -> Starlette:
    """Create the ASGI app; custom routes such as metrics are mounted by FastMCP."""

    return server.http_app(path=_normalise_path(config.http_path), transport="http")


def build_uvicorn_config(app: Starlette, config: HttpTransportConfig) -> uvicorn.Config:
    kwargs: dict[str, object] = {
        "timeout_graceful_shutdown": 0,
        "lifespan": "on",
    }
    if config.socket_path is not None:
        kwargs["uds"] = str(config.socket_path)
    return uvicorn.Config(app, host=config.host, port=config.port, **kwargs)


def run_http(server: FastMCP, config: HttpTransportConfig) -> None:
    """Serve MCP over streamable HTTP until interrupted."""

    context = {
        "host": config.host,
        "port": config.port,
        "routes": dict(describe_routes(config)),
        "socket_path": str(config.socket_path) if config.socket_path else None,
    }

    async def _serve() -> None:
        app = build_app(server, config)
        server_instance = uvicorn.Server(build_uvicorn_config(app, config))
        log_level = logger.getEffectiveLevel() or None
        logger.info("transport.http.serve", extra={"context": context})
        with temporary_log_level(level=log_level):
            await server_instance.serve()

    logger.info("transport.http.start", extra={"context": context})
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("transport.http.interrupted", extra={"context": context})
        raise
    except Exception:
        logger.exception("transport.http.failed", extra={"context": context})
        raise
    logger.info("transport.http.stop", extra={"context": context})


def _normalise_path(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path
