"""FastMCP server entrypoint for the Assets resolver service."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from typing import Any, Callable, Mapping, TypeVar

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from . import metrics
from .client import AssetsClient, AssetsCollaborator
from .config import Config, ConfigError, load_config
from .context import RequestContext
from .disk_cache import DiskCache
from .errors import CACHE_ERROR, CONFIG_ERROR, INVALID_REFERENCE, AssetsResolverError
from .logging import configure_logging, get_logger
from .models import EntityInfo
from .resolver import Resolver
from .sweeper import ExpiredCacheSweeper
from .transports import HttpTransportConfig, run_http, run_stdio

LOGGER = get_logger(__name__)
SERVER = FastMCP(name="assets-resolver")

T = TypeVar("T")


@dataclass(slots=True)
class AppState:
    config: Config
    client: AssetsCollaborator
    resolver: Resolver
    disk_cache: DiskCache | None = None
    sweeper: ExpiredCacheSweeper | None = None
    owns_client: bool = True


APP_STATE: AppState | None = None
_METRICS_ROUTE_NAME = "__assets_resolver_metrics__"


class ShutdownManager:
    """Track active tool requests so shutdown can drain gracefully."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._condition = threading.Condition(self._lock)
        self._active_requests = 0
        self._shutdown_requested = False
        self._deadline: float | None = None
        self._timeout = timedelta(seconds=5)

    def configure(self, timeout: timedelta) -> None:
        """Reset state for a new application lifecycle."""

        if timeout.total_seconds() < 0:
            timeout = timedelta(seconds=0)
        with self._condition:
            self._timeout = timeout
            self._active_requests = 0
            self._shutdown_requested = False
            self._deadline = None

    def try_enter(self) -> Callable[[], None] | None:
        """Register a new request. Returns its release callback, or None when shutting down."""

        with self._condition:
            if self._shutdown_requested:
                return None
            self._active_requests += 1

        def release() -> None:
            with self._condition:
                if self._active_requests > 0:
                    self._active_requests -= 1
                    self._condition.notify_all()

        return release

    def request_shutdown(self, timeout: timedelta | None = None) -> None:
        with self._condition:
            if self._shutdown_requested:
                return
            effective_timeout = timeout if timeout is not None else self._timeout
            self._shutdown_requested = True
            self._deadline = time.monotonic() + max(effective_timeout.total_seconds(), 0.0)
            self._condition.notify_all()

    def wait_for_drain(self) -> bool:
        """Wait for active requests to finish until the shutdown deadline."""

        with self._condition:
            while self._active_requests > 0:
                deadline = self._deadline
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._condition.wait(timeout=remaining)
            return True

    @property
    def active_requests(self) -> int:
        with self._condition:
            return self._active_requests


_SHUTDOWN_MANAGER = ShutdownManager()


def _normalise_metrics_path(path: str) -> str:
    if not path:
        return "/metrics"
    normalised = path if path.startswith("/") else f"/{path}"
    if len(normalised) > 1 and normalised.endswith("/"):
        normalised = normalised.rstrip("/")
    return normalised or "/metrics"


def _remove_metrics_route() -> None:
    routes = getattr(SERVER, "_additional_http_routes", None)
    if not routes:
        return
    routes[:] = [route for route in routes if getattr(route, "name", None) != _METRICS_ROUTE_NAME]


def _register_metrics_route(path: str) -> None:
    cleaned = _normalise_metrics_path(path)
    _remove_metrics_route()

    @SERVER.custom_route(cleaned, methods=["GET"], name=_METRICS_ROUTE_NAME, include_in_schema=False)
    async def metrics_endpoint(_request: Request) -> Response:
        return render_metrics()


def render_metrics() -> Response:
    registry = metrics.get_registry_optional()
    if registry is None or APP_STATE is None:
        return PlainTextResponse("metrics unavailable\n", status_code=503)
    store = APP_STATE.resolver.store
    body = metrics.format_prometheus(registry.snapshot(), counts=store.counts(), stale=store.is_stale())
    return PlainTextResponse(body, media_type="text/plain; version=0.0.4")


def initialize_app(config: Config, client: AssetsCollaborator | None = None) -> AppState:
    """Build the resolver and its collaborators for tool handlers.

    ``client`` replaces the HTTP client, mainly for tests; an injected client
    is not closed on shutdown.
    """

    global APP_STATE
    _SHUTDOWN_MANAGER.configure(config.shutdown_timeout)

    owns_client = client is None
    if client is None:
        client = AssetsClient(
            config.site_url,
            config.email,
            config.api_token,
            workspace_id=config.workspace_id,
            timeout=config.request_timeout.total_seconds(),
        )

    disk_cache: DiskCache | None = None
    sweeper: ExpiredCacheSweeper | None = None
    if config.enable_disk_cache:
        disk_cache = DiskCache(config.cache_dir, ttl=config.cache_ttl)
        if config.cache_sweep_interval.total_seconds() > 0:
            sweeper = ExpiredCacheSweeper(disk_cache, interval=config.cache_sweep_interval)
            sweeper.start()

    resolver = Resolver(
        client,
        disk_cache=disk_cache,
        memory_ttl=config.memory_ttl,
        refresh_timeout=config.refresh_timeout,
    )

    metrics.install_registry(metrics.MetricsRegistry())
    if config.enable_metrics:
        _register_metrics_route(config.metrics_path)
    else:
        _remove_metrics_route()

    APP_STATE = AppState(
        config=config,
        client=client,
        resolver=resolver,
        disk_cache=disk_cache,
        sweeper=sweeper,
        owns_client=owns_client,
    )
    return APP_STATE


def shutdown_app() -> None:
    """Drain in-flight tool calls, stop background services and clear state."""

    global APP_STATE
    if APP_STATE is None:
        return
    config = APP_STATE.config
    _SHUTDOWN_MANAGER.request_shutdown(config.shutdown_timeout)
    if not _SHUTDOWN_MANAGER.wait_for_drain():
        LOGGER.warning(
            "shutdown.timeout",
            extra={
                "context": {
                    "active_requests": _SHUTDOWN_MANAGER.active_requests,
                    "timeout_seconds": config.shutdown_timeout.total_seconds(),
                }
            },
        )
    if APP_STATE.sweeper:
        APP_STATE.sweeper.stop()
    if APP_STATE.owns_client and isinstance(APP_STATE.client, AssetsClient):
        APP_STATE.client.close()
    metrics.install_registry(None)
    _remove_metrics_route()
    APP_STATE = None


def get_state() -> AppState:
    if APP_STATE is None:
        raise AssetsResolverError(CONFIG_ERROR, "Server is not initialised")
    return APP_STATE


def get_resolver() -> Resolver:
    return get_state().resolver


def success(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {"ok": True, **payload}


def failure(error: AssetsResolverError) -> dict[str, Any]:
    metrics.record_error(error.code)
    return {"ok": False, "error": error.to_dict()}


def _shutdown_protected(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        release = _SHUTDOWN_MANAGER.try_enter()
        if release is None:
            return failure(AssetsResolverError(CONFIG_ERROR, "Server is shutting down"))
        try:
            return await func(*args, **kwargs)
        finally:
            release()

    return wrapper


def _resolver_error_guard(func):
    """Convert AssetsResolverError exceptions into structured failure responses."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except AssetsResolverError as exc:
            return failure(exc)

    return wrapper


async def _call_in_thread(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking resolver call off the event loop.

    The call receives a fresh :class:`RequestContext` as its last argument; it
    is cancelled when the awaiting task is, so the worker thread stops at its
    next checkpoint.
    """

    ctx = RequestContext()
    try:
        return await asyncio.to_thread(func, *args, ctx)
    except asyncio.CancelledError:
        ctx.cancel()
        raise


def _entity_summary(entity: EntityInfo) -> dict[str, Any]:
    return {"id": entity.id, "name": entity.name}


def _require_choice(**values: str | None) -> None:
    supplied = [name for name, value in values.items() if value is not None]
    if len(supplied) > 1:
        raise AssetsResolverError(
            INVALID_REFERENCE,
            f"Provide only one of: {', '.join(supplied)}",
            details={"supplied": supplied},
        )


@_resolver_error_guard
@_shutdown_protected
async def _assets_resolve_schema_impl(name: str | None = None, id: str | None = None) -> dict[str, Any]:
    _require_choice(name=name, id=id)
    resolver = get_resolver()
    if name is not None:
        schema_id = await _call_in_thread(resolver.resolve_schema_id, name)
        response = success({"action": "name_to_id", "name": name, "id": schema_id})
    elif id is not None:
        schema_name = await _call_in_thread(resolver.resolve_schema_name, id)
        response = success({"action": "id_to_name", "id": id, "name": schema_name})
    else:
        schemas = await _call_in_thread(resolver.list_schemas)
        response = success(
            {
                "action": "list_schemas",
                "schemas": [_entity_summary(schema) for schema in schemas],
                "count": len(schemas),
            }
        )
    metrics.record_operation("resolve_schema")
    return response


@_resolver_error_guard
@_shutdown_protected
async def _assets_resolve_type_impl(
    schema: str | None = None,
    name: str | None = None,
    id: str | None = None,
) -> dict[str, Any]:
    _require_choice(name=name, id=id)
    resolver = get_resolver()
    if id is not None:
        type_name, schema_name = await _call_in_thread(resolver.resolve_object_type_name, id)
        response = success({"action": "id_to_name", "id": id, "name": type_name, "schema": schema_name})
    elif schema is None:
        raise AssetsResolverError(INVALID_REFERENCE, "A schema is required to resolve or list object types by name")
    elif name is not None:
        type_id = await _call_in_thread(resolver.resolve_object_type_id, schema, name)
        response = success({"action": "name_to_id", "schema": schema, "name": name, "id": type_id})
    else:
        object_types = await _call_in_thread(resolver.list_object_types, schema)
        response = success(
            {
                "action": "list_object_types",
                "schema": schema,
                "object_types": [_entity_summary(entity) for entity in object_types],
                "count": len(object_types),
            }
        )
    metrics.record_operation("resolve_type")
    return response


@_resolver_error_guard
@_shutdown_protected
async def _assets_resolve_object_impl(ref: str) -> dict[str, Any]:
    description = await _call_in_thread(get_resolver().describe_object, ref)
    response = success({"action": "resolve_object", **description.to_dict()})
    metrics.record_operation("resolve_object")
    return response


@_resolver_error_guard
@_shutdown_protected
async def _assets_resolver_stats_impl() -> dict[str, Any]:
    stats = get_resolver().get_cache_stats()
    metrics.record_operation("stats")
    return success({"action": "cache_stats", "stats": stats.to_dict()})


@_resolver_error_guard
@_shutdown_protected
async def _assets_resolver_refresh_impl() -> dict[str, Any]:
    stats = await _call_in_thread(get_resolver().refresh_cache)
    metrics.record_operation("refresh")
    return success({"action": "refresh_cache", "stats": stats.to_dict()})


def _require_disk_cache() -> DiskCache:
    disk_cache = get_state().disk_cache
    if disk_cache is None:
        raise AssetsResolverError(CACHE_ERROR, "Disk cache is disabled")
    return disk_cache


@_resolver_error_guard
@_shutdown_protected
async def _assets_cache_list_impl() -> dict[str, Any]:
    disk_cache = _require_disk_cache()
    entries = await asyncio.to_thread(disk_cache.list_entries)
    metrics.record_operation("cache_list")
    return success(
        {
            "action": "cache_list",
            "cache_dir": str(disk_cache.directory),
            "entries": [entry.to_dict() for entry in entries],
            "count": len(entries),
        }
    )


@_resolver_error_guard
@_shutdown_protected
async def _assets_cache_clear_impl(expired_only: bool = True) -> dict[str, Any]:
    disk_cache = _require_disk_cache()
    clear = disk_cache.clear_expired if expired_only else disk_cache.clear_all
    removed = await asyncio.to_thread(clear)
    LOGGER.info("disk_cache.clear", extra={"context": {"expired_only": expired_only, "removed": removed}})
    metrics.record_operation("cache_clear")
    return success({"action": "cache_clear", "expired_only": expired_only, "removed": removed})


assets_resolve_schema = SERVER.tool(
    name="assets_resolve_schema",
    description=(
        "Resolve an Assets object schema.\n\n"
        "- name: schema name (case-insensitive) or id; returns its id.\n"
        "- id: schema id; returns its name.\n"
        "Omit both to list every schema."
    ),
)(_assets_resolve_schema_impl)

assets_resolve_type = SERVER.tool(
    name="assets_resolve_type",
    description=(
        "Resolve an Assets object type.\n\n"
        "- id: object type id; returns its name and schema.\n"
        "- schema + name: object type name within that schema; returns its id.\n"
        "- schema only: list the schema's object types.\n"
        "Object type names are only unique within a schema."
    ),
)(_assets_resolve_type_impl)

assets_resolve_object = SERVER.tool(
    name="assets_resolve_object",
    description=(
        "Describe an Assets object.\n\n"
        "ref may be a numeric object id (e.g. '384'), an object key, or 'schema/key'. "
        "Keys only resolve for objects previously looked up by id."
    ),
)(_assets_resolve_object_impl)

assets_resolver_stats = SERVER.tool(
    name="assets_resolver_stats",
    description="Report resolver cache counts, freshness and refresh history",
)(_assets_resolver_stats_impl)

assets_resolver_refresh = SERVER.tool(
    name="assets_resolver_refresh",
    description="Reload schemas and object types from the Assets API, bypassing all caches",
)(_assets_resolver_refresh_impl)

assets_cache_list = SERVER.tool(
    name="assets_cache_list",
    description="List persisted resolver cache files",
)(_assets_cache_list_impl)

assets_cache_clear = SERVER.tool(
    name="assets_cache_clear",
    description="Delete persisted resolver cache files (only expired ones unless expired_only is false)",
)(_assets_cache_clear_impl)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for running the Assets resolver server."""

    configure_logging()
    try:
        config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration", extra={"context": {"error": str(exc)}})
        raise SystemExit(2) from exc
    configure_logging(config.log_level)
    LOGGER.info(
        "Configuration loaded",
        extra={
            "context": {
                "site_url": config.site_url,
                "workspace_id": config.workspace_id,
                "cache_dir": str(config.cache_dir),
                "enable_disk_cache": config.enable_disk_cache,
                "enable_stdio": config.enable_stdio,
                "enable_http": config.enable_http,
                "enable_metrics": config.enable_metrics,
            }
        },
    )

    initialize_app(config)
    try:
        if config.enable_stdio:
            run_stdio(SERVER)
        else:
            LOGGER.info("Stdio transport disabled")

        if config.enable_http:
            http_config = HttpTransportConfig(
                host=config.http_host,
                port=config.http_port,
                http_path=config.http_path,
                metrics_path=config.metrics_path,
                enable_metrics=config.enable_metrics,
                socket_path=config.http_socket_path,
            )
            run_http(SERVER, http_config)
        else:
            LOGGER.info("HTTP transport disabled")
    finally:
        shutdown_app()


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()
