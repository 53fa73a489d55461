"""Transport wiring for the Assets resolver MCP server."""

from __future__ import annotations

from .http import HttpTransportConfig, describe_routes, run_http
from .stdio import run_stdio

__all__ = [
    "HttpTransportConfig",
    "describe_routes",
    "run_http",
    "run_stdio",
]
