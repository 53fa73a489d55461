"""Logging setup for the Assets resolver server.

Package loggers live under ``assets_resolver`` and emit event names such as
``resolver.refresh.complete`` with structured fields in
``extra={"context": {...}}``. Handlers come from FastMCP and write to stderr,
so the stdio transport keeps stdout for protocol frames only.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastmcp.utilities.logging import configure_logging as _fastmcp_configure_logging

_PACKAGE_LOGGER_NAME = "assets_resolver"
# httpx logs every request line at INFO, including workspace-scoped URLs.
_HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")
_CONFIGURED = False

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _qualify(name: str | None) -> str:
    if not name:
        return _PACKAGE_LOGGER_NAME
    if name.startswith(_PACKAGE_LOGGER_NAME):
        return name
    return f"{_PACKAGE_LOGGER_NAME}.{name}"


def _numeric_level(level: LogLevel | str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(level: LogLevel | str | int = "INFO", **rich_kwargs: Any) -> logging.Logger:
    """Install FastMCP handlers on the package logger.

    HTTP client libraries are held at WARNING unless the package itself runs
    at DEBUG, where per-request lines help trace Assets API calls.
    """

    global _CONFIGURED

    numeric = _numeric_level(level)
    logger = logging.getLogger(_PACKAGE_LOGGER_NAME)
    _fastmcp_configure_logging(level=logging.getLevelName(numeric), logger=logger, **rich_kwargs)

    client_level = numeric if numeric <= logging.DEBUG else max(numeric, logging.WARNING)
    for name in _HTTP_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(client_level)

    _CONFIGURED = True
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger scoped to the package namespace."""

    if not _CONFIGURED:
        configure_logging()

    return logging.getLogger(_qualify(name))
