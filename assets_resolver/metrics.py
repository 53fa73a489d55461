from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from threading import RLock
from time import monotonic
from typing import Mapping

_DEFAULT_OPERATIONS = ("resolve_schema", "resolve_type", "resolve_object", "stats", "refresh", "cache_list", "cache_clear")
_DEFAULT_CACHE_EVENTS = (
    "memory_hit",
    "disk_load",
    "disk_miss",
    "network_refresh",
    "schema_fetch_failure",
    "disk_write_failure",
    "object_fetch",
)

_registry_lock = RLock()
_registry: "MetricsRegistry | None" = None


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable snapshot of the current metrics state."""

    operations: Mapping[str, int]
    errors: Mapping[str, int]
    cache_events: Mapping[str, int]
    uptime_seconds: float


class MetricsRegistry:
    """Thread-safe registry storing counters for Prometheus export."""

    __slots__ = ("_operations", "_errors", "_cache_events", "_lock", "_started_at")

    def __init__(self) -> None:
        self._operations: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()
        self._cache_events: Counter[str] = Counter()
        self._lock = RLock()
        self._started_at = monotonic()

    def record_operation(self, name: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = name.strip().lower()
        if not key:
            return
        with self._lock:
            self._operations[key] += count

    def record_error(self, code: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = code.strip().upper()
        if not key:
            return
        with self._lock:
            self._errors[key] += count

    def record_cache_event(self, event: str, *, count: int = 1) -> None:
        if count <= 0:
            return
        key = event.strip().lower() or "unknown"
        with self._lock:
            self._cache_events[key] += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations: dict[str, int] = {name: int(self._operations.get(name, 0)) for name in _DEFAULT_OPERATIONS}
            for name, value in self._operations.items():
                operations.setdefault(name, int(value))
            errors = {code: int(value) for code, value in self._errors.items()}
            events: dict[str, int] = {name: int(self._cache_events.get(name, 0)) for name in _DEFAULT_CACHE_EVENTS}
            for name, value in self._cache_events.items():
                events.setdefault(name, int(value))
            uptime = max(monotonic() - self._started_at, 0.0)
        return MetricsSnapshot(operations=operations, errors=errors, cache_events=events, uptime_seconds=uptime)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._errors.clear()
            self._cache_events.clear()
            self._started_at = monotonic()


def install_registry(registry: MetricsRegistry | None) -> None:
    """Install the active metrics registry (or disable metrics when None)."""

    with _registry_lock:
        global _registry
        _registry = registry


def get_registry_optional() -> MetricsRegistry | None:
    with _registry_lock:
        return _registry


def record_operation(name: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_operation(name, count=count)


def record_error(code: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_error(code, count=count)


def record_cache_event(event: str, *, count: int = 1) -> None:
    registry = get_registry_optional()
    if registry is not None:
        registry.record_cache_event(event, count=count)


def format_prometheus(snapshot: MetricsSnapshot, *, counts: Mapping[str, int], stale: bool) -> str:
    """Render metrics using Prometheus exposition format (text, version 0.0.4)."""

    lines: list[str] = []

    lines.append("# HELP assets_resolver_ops_total Tool operations executed by type.")
    lines.append("# TYPE assets_resolver_ops_total counter")
    for name in sorted(snapshot.operations):
        lines.append(f'assets_resolver_ops_total{{op="{name}"}} {snapshot.operations[name]}')

    lines.append("# HELP assets_resolver_errors_total Errors returned, grouped by error code.")
    lines.append("# TYPE assets_resolver_errors_total counter")
    if snapshot.errors:
        for code in sorted(snapshot.errors):
            lines.append(f'assets_resolver_errors_total{{code="{code}"}} {snapshot.errors[code]}')
    else:
        lines.append('assets_resolver_errors_total{code="none"} 0')

    lines.append("# HELP assets_resolver_cache_events_total Cache tier decisions and failures.")
    lines.append("# TYPE assets_resolver_cache_events_total counter")
    for event in sorted(snapshot.cache_events):
        lines.append(f'assets_resolver_cache_events_total{{event="{event}"}} {snapshot.cache_events[event]}')

    lines.append("# HELP assets_resolver_entities_current Entities currently cached, by kind.")
    lines.append("# TYPE assets_resolver_entities_current gauge")
    for kind in ("schemas", "object_types", "objects"):
        lines.append(f'assets_resolver_entities_current{{kind="{kind}"}} {int(counts.get(kind, 0))}')

    lines.append("# HELP assets_resolver_cache_stale Whether the in-memory tables are past their TTL.")
    lines.append("# TYPE assets_resolver_cache_stale gauge")
    lines.append(f"assets_resolver_cache_stale {1 if stale else 0}")

    lines.append("# HELP assets_resolver_uptime_seconds Server uptime in seconds.")
    lines.append("# TYPE assets_resolver_uptime_seconds gauge")
    lines.append(f"assets_resolver_uptime_seconds {snapshot.uptime_seconds:.6f}")

    return "\n".join(lines) + "\n"
