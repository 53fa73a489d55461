"""Configuration loading utilities for the Assets resolver server."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Sequence
from urllib.parse import urlparse

from dotenv import load_dotenv

ENV_PREFIX = "ATLASSIAN_ASSETS_"

BOOL_TRUE = {"1", "true", "t", "yes", "y", "on"}
BOOL_FALSE = {"0", "false", "f", "no", "n", "off"}
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8766
DEFAULT_HTTP_PATH = "/mcp"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_CACHE_DIR = ".cache/atlassian-assets"
DEFAULT_CACHE_TTL_HOURS = 24
DEFAULT_MEMORY_TTL = "5m"
DEFAULT_REFRESH_TIMEOUT = "2m"
DEFAULT_REQUEST_TIMEOUT = "30s"
DEFAULT_CACHE_SWEEP_INTERVAL = "1h"
DEFAULT_SHUTDOWN_TIMEOUT = "5s"
DEFAULT_LOG_LEVEL = "INFO"

T_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}

ENV_FIELD_MAP = {
    "config_file": f"{ENV_PREFIX}CONFIG_FILE",
    "site_url": "ATLASSIAN_HOST",
    "email": "ATLASSIAN_EMAIL",
    "api_token": "ATLASSIAN_API_TOKEN",
    "workspace_id": f"{ENV_PREFIX}WORKSPACE_ID",
    "cache_dir": f"{ENV_PREFIX}CACHE_DIR",
    "cache_ttl_hours": f"{ENV_PREFIX}CACHE_TTL_HOURS",
    "enable_disk_cache": f"{ENV_PREFIX}ENABLE_DISK_CACHE",
    "memory_ttl": f"{ENV_PREFIX}MEMORY_TTL",
    "refresh_timeout": f"{ENV_PREFIX}REFRESH_TIMEOUT",
    "request_timeout": f"{ENV_PREFIX}REQUEST_TIMEOUT",
    "cache_sweep_interval": f"{ENV_PREFIX}CACHE_SWEEP_INTERVAL",
    "enable_stdio": f"{ENV_PREFIX}ENABLE_STDIO",
    "enable_http": f"{ENV_PREFIX}ENABLE_HTTP",
    "enable_metrics": f"{ENV_PREFIX}ENABLE_METRICS",
    "http_host": f"{ENV_PREFIX}HTTP_HOST",
    "http_port": f"{ENV_PREFIX}HTTP_PORT",
    "http_socket_path": f"{ENV_PREFIX}HTTP_SOCKET_PATH",
    "http_path": f"{ENV_PREFIX}HTTP_PATH",
    "metrics_path": f"{ENV_PREFIX}METRICS_PATH",
    "shutdown_timeout": f"{ENV_PREFIX}SHUTDOWN_TIMEOUT",
    "log_level": f"{ENV_PREFIX}LOG_LEVEL",
}

DEFAULT_VALUES: dict[str, Any] = {
    "config_file": None,
    "site_url": None,
    "email": None,
    "api_token": None,
    "workspace_id": None,
    "cache_dir": DEFAULT_CACHE_DIR,
    "cache_ttl_hours": DEFAULT_CACHE_TTL_HOURS,
    "enable_disk_cache": True,
    "memory_ttl": DEFAULT_MEMORY_TTL,
    "refresh_timeout": DEFAULT_REFRESH_TIMEOUT,
    "request_timeout": DEFAULT_REQUEST_TIMEOUT,
    "cache_sweep_interval": DEFAULT_CACHE_SWEEP_INTERVAL,
    "enable_stdio": True,
    "enable_http": False,
    "enable_metrics": False,
    "http_host": DEFAULT_HTTP_HOST,
    "http_port": DEFAULT_HTTP_PORT,
    "http_socket_path": None,
    "http_path": DEFAULT_HTTP_PATH,
    "metrics_path": DEFAULT_METRICS_PATH,
    "shutdown_timeout": DEFAULT_SHUTDOWN_TIMEOUT,
    "log_level": DEFAULT_LOG_LEVEL,
}


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


@dataclass(slots=True)
class Config:
    """Configuration model for the Assets resolver server."""

    site_url: str
    email: str
    api_token: str
    workspace_id: str | None
    cache_dir: Path
    cache_ttl: timedelta
    enable_disk_cache: bool
    memory_ttl: timedelta
    refresh_timeout: timedelta
    request_timeout: timedelta
    cache_sweep_interval: timedelta
    enable_stdio: bool
    enable_http: bool
    enable_metrics: bool
    http_host: str
    http_port: int
    http_socket_path: Path | None
    http_path: str
    metrics_path: str
    shutdown_timeout: timedelta
    log_level: str
    config_file: Path | None = None


def load_config(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from CLI arguments, environment variables, and optional file.

    When ``environ`` is omitted the process environment is used, after loading
    a ``.env`` file from the working directory without overriding variables
    that are already set.
    """

    parser = _build_arg_parser()
    parsed = parser.parse_args(argv)
    cli_values = {k: v for k, v in vars(parsed).items() if v is not None}

    if environ is None:
        load_dotenv(override=False)
        environ = os.environ
    env_values = _extract_env_values(environ)

    config_path_value = cli_values.get("config_file") or env_values.get("config_file")
    file_values = _load_config_file(config_path_value)

    merged: dict[str, Any] = {}
    _merge_layer(merged, DEFAULT_VALUES)
    _merge_layer(merged, file_values)
    _merge_layer(merged, env_values)
    _merge_layer(merged, cli_values)

    return _normalize_values(merged, config_path_value)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="assets-resolver",
        description="Atlassian Assets name/ID resolver MCP server.",
        add_help=False,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("-h", "--help", action="help", help="Show this help message and exit.")
    parser.add_argument(
        "--config-file",
        dest="config_file",
        metavar="PATH",
        help="Path to a JSON configuration file. Default: none.",
    )

    parser.add_argument("--site-url", dest="site_url", metavar="URL", help="Atlassian site URL (env ATLASSIAN_HOST).")
    parser.add_argument("--email", dest="email", metavar="EMAIL", help="Account email for basic auth (env ATLASSIAN_EMAIL).")
    parser.add_argument("--api-token", dest="api_token", metavar="TOKEN", help="API token for basic auth (env ATLASSIAN_API_TOKEN).")
    parser.add_argument(
        "--workspace-id",
        dest="workspace_id",
        metavar="ID",
        help="Assets workspace id (default: discovered from the site).",
    )

    parser.add_argument(
        "--cache-dir",
        dest="cache_dir",
        metavar="PATH",
        help=f"Directory for the persisted resolver cache (default: {DEFAULT_CACHE_DIR}).",
    )
    parser.add_argument(
        "--cache-ttl-hours",
        dest="cache_ttl_hours",
        metavar="INT",
        help=f"Hours a persisted cache entry stays valid (default: {DEFAULT_CACHE_TTL_HOURS}).",
    )
    parser.add_argument(
        "--enable-disk-cache",
        dest="enable_disk_cache",
        metavar="BOOL",
        help="Persist resolver data between runs (default: true).",
    )
    parser.add_argument(
        "--memory-ttl",
        dest="memory_ttl",
        metavar="DURATION",
        help=f"Lifetime of the in-memory resolver tables (default: {DEFAULT_MEMORY_TTL}).",
    )
    parser.add_argument(
        "--refresh-timeout",
        dest="refresh_timeout",
        metavar="DURATION",
        help=f"Upper bound for one full network refresh (default: {DEFAULT_REFRESH_TIMEOUT}).",
    )
    parser.add_argument(
        "--request-timeout",
        dest="request_timeout",
        metavar="DURATION",
        help=f"Timeout for a single API request (default: {DEFAULT_REQUEST_TIMEOUT}).",
    )
    parser.add_argument(
        "--cache-sweep-interval",
        dest="cache_sweep_interval",
        metavar="DURATION",
        help=f"Interval for removing expired cache files, 0 disables (default: {DEFAULT_CACHE_SWEEP_INTERVAL}).",
    )

    parser.add_argument(
        "--enable-stdio",
        dest="enable_stdio",
        metavar="BOOL",
        help="Enable the MCP stdio transport (default: true).",
    )
    parser.add_argument(
        "--enable-http",
        dest="enable_http",
        metavar="BOOL",
        help="Enable the streamable HTTP endpoint (default: false).",
    )
    parser.add_argument(
        "--enable-metrics",
        dest="enable_metrics",
        metavar="BOOL",
        help="Expose Prometheus metrics (requires --enable-http true; default: false).",
    )
    parser.add_argument(
        "--http-host",
        dest="http_host",
        metavar="HOST",
        help=f"HTTP listener host (default: {DEFAULT_HTTP_HOST}).",
    )
    parser.add_argument(
        "--http-port",
        dest="http_port",
        metavar="PORT",
        help=f"HTTP listener port (default: {DEFAULT_HTTP_PORT}).",
    )
    parser.add_argument(
        "--http-socket-path",
        dest="http_socket_path",
        metavar="PATH",
        help="Unix domain socket path for the HTTP listener (optional).",
    )
    parser.add_argument(
        "--http-path",
        dest="http_path",
        metavar="PATH",
        help=f"HTTP path for MCP requests (default: {DEFAULT_HTTP_PATH}).",
    )
    parser.add_argument(
        "--metrics-path",
        dest="metrics_path",
        metavar="PATH",
        help=f"Metrics endpoint path (default: {DEFAULT_METRICS_PATH}).",
    )
    parser.add_argument("--shutdown-timeout", dest="shutdown_timeout", metavar="DURATION", help="Graceful shutdown timeout (default: 5s).")
    parser.add_argument("--log-level", dest="log_level", metavar="LEVEL", help="Log level (default: INFO).")

    return parser


def _extract_env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, env_name in ENV_FIELD_MAP.items():
        if env_name in env:
            values[field] = env[env_name]
    return values


def _load_config_file(path_value: str | Path | None) -> dict[str, Any]:
    if not path_value:
        return {}
    path = _parse_path(path_value, field="config_file")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file is not valid JSON: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a JSON object")
    result: dict[str, Any] = {k: v for k, v in data.items() if k in DEFAULT_VALUES}
    result["config_file"] = str(path)
    return result


def _merge_layer(base: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if value is None:
            continue
        base[key] = value


def _normalize_values(values: Mapping[str, Any], config_path_value: str | Path | None) -> Config:
    site_url = _parse_site_url(values.get("site_url"))
    email = _require_string(values.get("email"), field="email", env_name=ENV_FIELD_MAP["email"])
    api_token = _require_string(values.get("api_token"), field="api_token", env_name=ENV_FIELD_MAP["api_token"])

    workspace_value = values.get("workspace_id")
    workspace_id = str(workspace_value).strip() if workspace_value is not None else None
    workspace_id = workspace_id or None

    cache_dir = _parse_path(values["cache_dir"], field="cache_dir")
    cache_ttl_hours = _parse_int(values.get("cache_ttl_hours", DEFAULT_CACHE_TTL_HOURS), field="cache_ttl_hours", minimum=1)
    enable_disk_cache = _parse_bool(values.get("enable_disk_cache"), default=DEFAULT_VALUES["enable_disk_cache"])

    memory_ttl = _parse_duration(values.get("memory_ttl", DEFAULT_MEMORY_TTL), default_unit="m", field="memory_ttl")
    refresh_timeout = _parse_duration(values.get("refresh_timeout", DEFAULT_REFRESH_TIMEOUT), default_unit="s", field="refresh_timeout")
    request_timeout = _parse_duration(values.get("request_timeout", DEFAULT_REQUEST_TIMEOUT), default_unit="s", field="request_timeout")
    if refresh_timeout.total_seconds() <= 0:
        raise ConfigError("refresh_timeout must be greater than zero")
    if request_timeout.total_seconds() <= 0:
        raise ConfigError("request_timeout must be greater than zero")
    cache_sweep_interval = _parse_duration(
        values.get("cache_sweep_interval", DEFAULT_CACHE_SWEEP_INTERVAL),
        default_unit="m",
        field="cache_sweep_interval",
    )

    enable_stdio = _parse_bool(values.get("enable_stdio"), default=DEFAULT_VALUES["enable_stdio"])
    enable_http = _parse_bool(values.get("enable_http"), default=DEFAULT_VALUES["enable_http"])
    enable_metrics = _parse_bool(values.get("enable_metrics"), default=DEFAULT_VALUES["enable_metrics"])
    if enable_metrics and not enable_http:
        raise ConfigError("enable_metrics requires enable_http to be true")

    http_host = str(values.get("http_host", DEFAULT_HTTP_HOST))
    http_port = _parse_int(values.get("http_port", DEFAULT_HTTP_PORT), field="http_port", minimum=0, maximum=65535)
    http_socket_path = _parse_optional_path(values.get("http_socket_path"), field="http_socket_path")
    http_path = str(values.get("http_path", DEFAULT_HTTP_PATH))
    metrics_path = str(values.get("metrics_path", DEFAULT_METRICS_PATH))
    if enable_metrics and http_path == metrics_path:
        raise ConfigError("http_path and metrics_path must be distinct")

    shutdown_timeout = _parse_duration(values.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT), default_unit="s", field="shutdown_timeout")

    log_level = str(values.get("log_level", DEFAULT_LOG_LEVEL)).strip().upper()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")

    config_file_path = _parse_optional_path(config_path_value, field="config_file")

    return Config(
        site_url=site_url,
        email=email,
        api_token=api_token,
        workspace_id=workspace_id,
        cache_dir=cache_dir,
        cache_ttl=timedelta(hours=cache_ttl_hours),
        enable_disk_cache=enable_disk_cache,
        memory_ttl=memory_ttl,
        refresh_timeout=refresh_timeout,
        request_timeout=request_timeout,
        cache_sweep_interval=cache_sweep_interval,
        enable_stdio=enable_stdio,
        enable_http=enable_http,
        enable_metrics=enable_metrics,
        http_host=http_host,
        http_port=http_port,
        http_socket_path=http_socket_path,
        http_path=http_path,
        metrics_path=metrics_path,
        shutdown_timeout=shutdown_timeout,
        log_level=log_level,
        config_file=config_file_path,
    )


def _parse_site_url(value: Any) -> str:
    raw = _require_string(value, field="site_url", env_name=ENV_FIELD_MAP["site_url"])
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigError(f"site_url must be an http(s) URL: {raw!r}")
    # A stable form keeps the persisted cache key identical across runs.
    return raw.rstrip("/")


def _require_string(value: Any, *, field: str, env_name: str) -> str:
    if value is None:
        raise ConfigError(f"{field} is required (set {env_name})")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{field} may not be empty")
    return text


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in BOOL_TRUE:
            return True
        if lowered in BOOL_FALSE:
            return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _parse_int(value: Any, *, field: str, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        if isinstance(value, (int, float)):
            int_value = int(value)
        else:
            int_value = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {field}: {value!r}") from exc

    if minimum is not None and int_value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    if maximum is not None and int_value > maximum:
        raise ConfigError(f"{field} must be <= {maximum}")
    return int_value


def _parse_duration(value: Any, *, default_unit: str, field: str) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if seconds < 0:
            raise ConfigError(f"{field} must be positive")
        return timedelta(seconds=seconds)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration for {field}: {value!r}")

    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")

    unit = default_unit
    suffix = stripped[-1]
    number_part = stripped
    if suffix.lower() in T_DURATION_UNITS:
        unit = suffix.lower()
        number_part = stripped[:-1]
    if not number_part or not number_part.isdigit():
        raise ConfigError(f"{field} must be a non-negative integer optionally suffixed with s, m, or h")
    seconds = int(number_part) * T_DURATION_UNITS[unit]
    return timedelta(seconds=seconds)


def _parse_path(value: Any, *, field: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser().resolve()
    if not isinstance(value, str):
        raise ConfigError(f"Invalid path for {field}: {value!r}")
    stripped = value.strip()
    if not stripped:
        raise ConfigError(f"{field} may not be empty")
    return Path(stripped).expanduser().resolve()


def _parse_optional_path(value: Any, *, field: str) -> Path | None:
    if value in (None, ""):
        return None
    return _parse_path(value, field=field)
