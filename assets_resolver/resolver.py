"""Bidirectional name/ID resolution over the Assets API.

The :class:`Resolver` answers lookups from in-memory tables and keeps them
fresh with a two-tier policy: tables younger than the memory TTL are used as
is; otherwise a persisted snapshot is adopted when one exists for the current
workspace and site, and only then is a full network refresh performed.

Refreshes are single-flight. The new table generation is built without
holding the store lock and swapped in at the end, so readers are never
blocked behind network calls.
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterator

from . import metrics
from .cache import DEFAULT_MEMORY_TTL, CacheStore, CacheTables, Clock
from .client import AssetsCollaborator
from .context import RequestContext, ensure_context
from .disk_cache import DiskCache, DiskCacheError
from .errors import CANCELLED, INVALID_REFERENCE, NOT_FOUND, AssetsResolverError
from .logging import get_logger
from .models import EntityInfo, EntityKind, compound_key, utc_now

logger = get_logger(__name__)

DEFAULT_REFRESH_TIMEOUT = timedelta(minutes=2)
_LOCK_POLL_SECONDS = 0.1
_NUMERIC_REFERENCE = re.compile(r"[+-]?\d+")


@dataclass(frozen=True, slots=True)
class CacheStats:
    schemas: int
    object_types: int
    objects: int
    last_refresh: datetime | None
    ttl: timedelta
    is_stale: bool
    last_refresh_source: str | None
    source_cached_at: datetime | None
    disk_cache_enabled: bool
    disk_loads: int
    network_refreshes: int
    disk_write_failures: int
    failed_schemas: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemas": self.schemas,
            "object_types": self.object_types,
            "objects": self.objects,
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "ttl_minutes": self.ttl.total_seconds() / 60,
            "needs_refresh": self.is_stale,
            "last_refresh_source": self.last_refresh_source,
            "source_cached_at": self.source_cached_at.isoformat() if self.source_cached_at else None,
            "disk_cache_enabled": self.disk_cache_enabled,
            "disk_loads": self.disk_loads,
            "network_refreshes": self.network_refreshes,
            "disk_write_failures": self.disk_write_failures,
            "failed_schemas": list(self.failed_schemas),
        }


@dataclass(frozen=True, slots=True)
class ObjectDescription:
    """An object together with the names of its schema and object type."""

    reference: str
    object_id: str
    object_key: str
    display_name: str
    schema_id: str
    schema_name: str
    object_type_id: str
    object_type_name: str
    last_updated: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "input": self.reference,
            "object_id": self.object_id,
            "object_key": self.object_key,
            "display_name": self.display_name,
            "schema_id": self.schema_id,
            "schema_name": self.schema_name,
            "object_type_id": self.object_type_id,
            "object_type_name": self.object_type_name,
            "last_updated": self.last_updated.isoformat(),
        }


class Resolver:
    """Resolve schema, object-type and object references for one workspace."""

    def __init__(
        self,
        client: AssetsCollaborator,
        *,
        disk_cache: DiskCache | None = None,
        memory_ttl: timedelta = DEFAULT_MEMORY_TTL,
        refresh_timeout: timedelta = DEFAULT_REFRESH_TIMEOUT,
        clock: Clock = utc_now,
    ) -> None:
        self._client = client
        self._disk_cache = disk_cache
        self._refresh_timeout = refresh_timeout
        self._clock = clock
        self._store = CacheStore(ttl=memory_ttl, clock=clock)
        self._refresh_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._disk_loads = 0
        self._network_refreshes = 0
        self._disk_write_failures = 0
        self._last_source: str | None = None
        self._source_cached_at: datetime | None = None
        self._failed_schemas: tuple[str, ...] = ()
        # Bumped after every refresh attempt; guarded by _refresh_lock.
        self._refresh_generation = 0
        self._last_refresh_error: AssetsResolverError | None = None

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def disk_cache(self) -> DiskCache | None:
        return self._disk_cache

    # -- refresh policy -------------------------------------------------

    def ensure_fresh(self, ctx: RequestContext | None = None) -> None:
        """Make sure the tables are within their TTL, loading them if needed."""

        ctx = ensure_context(ctx)
        if not self._store.is_stale():
            metrics.record_cache_event("memory_hit")
            return
        generation = self._refresh_generation
        with self._single_flight(ctx):
            if not self._store.is_stale():
                # Another caller finished a refresh while we waited.
                return
            failure = self._last_refresh_error
            if self._refresh_generation != generation and failure is not None:
                # The attempt we queued behind failed; share its outcome.
                raise AssetsResolverError(failure.code, failure.message, details=failure.details) from failure
            self._attempt_refresh(ctx, use_disk=True)

    def refresh_cache(self, ctx: RequestContext | None = None) -> CacheStats:
        """Force a network refresh, bypassing both cache tiers."""

        ctx = ensure_context(ctx)
        with self._single_flight(ctx):
            self._attempt_refresh(ctx, use_disk=False)
        return self.get_cache_stats()

    def _attempt_refresh(self, ctx: RequestContext, *, use_disk: bool) -> None:
        refresh_ctx = ctx.with_timeout(self._refresh_timeout)
        try:
            if not (use_disk and self._load_from_disk(refresh_ctx)):
                self._refresh_from_network(refresh_ctx)
        except AssetsResolverError as exc:
            # A caller's own cancellation says nothing about the upstream.
            self._last_refresh_error = None if exc.code == CANCELLED else exc
            raise
        except Exception:
            self._last_refresh_error = None
            raise
        else:
            self._last_refresh_error = None
        finally:
            self._refresh_generation += 1

    @contextmanager
    def _single_flight(self, ctx: RequestContext) -> Iterator[None]:
        ctx.check()
        while not self._refresh_lock.acquire(timeout=_LOCK_POLL_SECONDS):
            ctx.check()
        try:
            yield
        finally:
            self._refresh_lock.release()

    def _identity(self, ctx: RequestContext) -> tuple[str, str]:
        return self._client.resolve_workspace_id(ctx), self._client.site_url

    def _load_from_disk(self, ctx: RequestContext) -> bool:
        if self._disk_cache is None:
            return False
        workspace_id, site_url = self._identity(ctx)
        entry = self._disk_cache.load(workspace_id, site_url)
        if entry is None:
            metrics.record_cache_event("disk_miss")
            return False
        self._store.swap(entry.tables, refreshed_at=self._clock())
        with self._stats_lock:
            self._disk_loads += 1
            self._last_source = "disk"
            self._source_cached_at = entry.cached_at
            self._failed_schemas = ()
        metrics.record_cache_event("disk_load")
        logger.info(
            "resolver.refresh.disk",
            extra={
                "context": {
                    "workspace_id": workspace_id,
                    "schemas": len(entry.tables.schemas),
                    "object_types": len(entry.tables.object_types),
                    "cached_at": entry.cached_at.isoformat(),
                }
            },
        )
        return True

    def _refresh_from_network(self, refresh_ctx: RequestContext) -> None:
        started_at = self._clock()
        logger.info("resolver.refresh.start", extra={"context": {"timeout_seconds": self._refresh_timeout.total_seconds()}})

        tables = CacheTables()
        # Without the schema list nothing else can be resolved; let it fail the refresh.
        for record in self._client.list_schemas(refresh_ctx):
            if not record.id:
                continue
            tables.add_schema(EntityInfo(id=record.id, name=record.name, kind=EntityKind.SCHEMA, last_updated=started_at))

        failed: list[str] = []
        schema_count = len(tables.schemas)
        for position, schema in enumerate(list(tables.schemas.values()), start=1):
            refresh_ctx.check()
            logger.debug(
                "resolver.refresh.schema",
                extra={"context": {"schema_id": schema.id, "position": position, "total": schema_count}},
            )
            try:
                object_types = self._client.list_object_types(refresh_ctx, schema.id)
            except Exception as exc:
                if isinstance(exc, AssetsResolverError) and exc.interrupted:
                    raise
                failed.append(schema.id)
                metrics.record_cache_event("schema_fetch_failure")
                logger.error(
                    "resolver.refresh.schema_failed",
                    extra={"context": {"schema_id": schema.id, "schema_name": schema.name, "error": str(exc)}},
                )
                continue
            for record in object_types:
                if not record.id:
                    continue
                tables.add_object_type(
                    EntityInfo(
                        id=record.id,
                        name=record.name,
                        kind=EntityKind.OBJECT_TYPE,
                        schema_id=schema.id,
                        parent_id=schema.id,
                        last_updated=started_at,
                    )
                )

        self._store.swap(tables, refreshed_at=self._clock())
        with self._stats_lock:
            self._network_refreshes += 1
            self._last_source = "network"
            self._source_cached_at = started_at
            self._failed_schemas = tuple(failed)
        metrics.record_cache_event("network_refresh")
        logger.info(
            "resolver.refresh.complete",
            extra={
                "context": {
                    "schemas": schema_count,
                    "object_types": len(tables.object_types),
                    "failed_schemas": failed,
                }
            },
        )
        self._save_to_disk(tables, refresh_ctx)

    def _save_to_disk(self, tables: CacheTables, ctx: RequestContext) -> None:
        if self._disk_cache is None:
            return
        workspace_id, site_url = self._identity(ctx)
        try:
            self._disk_cache.save(workspace_id, site_url, tables)
        except DiskCacheError as exc:
            with self._stats_lock:
                self._disk_write_failures += 1
            metrics.record_cache_event("disk_write_failure")
            logger.warning("disk_cache.save.failed", extra={"context": dict(exc.details or {})})

    # -- schemas ----------------------------------------------------------

    def resolve_schema_id(self, name_or_id: str, ctx: RequestContext | None = None) -> str:
        _require_reference(name_or_id, "schema")
        self.ensure_fresh(ctx)
        return self._schema_entity(name_or_id).id

    def resolve_schema_name(self, schema_id: str, ctx: RequestContext | None = None) -> str:
        _require_reference(schema_id, "schema id")
        self.ensure_fresh(ctx)
        entity = self._store.lookup_by_id(EntityKind.SCHEMA, schema_id)
        if entity is None:
            raise AssetsResolverError(NOT_FOUND, f"schema id not found: {schema_id}", details={"schema_id": schema_id})
        return entity.name

    def list_schemas(self, ctx: RequestContext | None = None) -> list[EntityInfo]:
        self.ensure_fresh(ctx)
        return sorted(self._store.entities(EntityKind.SCHEMA), key=lambda entity: (entity.lookup_name, entity.id))

    def _schema_entity(self, name_or_id: str) -> EntityInfo:
        entity = self._store.lookup_by_id(EntityKind.SCHEMA, name_or_id)
        if entity is None:
            entity = self._store.lookup_by_name(EntityKind.SCHEMA, name_or_id.lower())
        if entity is None:
            raise AssetsResolverError(NOT_FOUND, f"schema not found: {name_or_id}", details={"schema": name_or_id})
        return entity

    # -- object types -----------------------------------------------------

    def resolve_object_type_id(
        self,
        schema_name_or_id: str,
        type_name_or_id: str,
        ctx: RequestContext | None = None,
    ) -> str:
        _require_reference(schema_name_or_id, "schema")
        _require_reference(type_name_or_id, "object type")
        self.ensure_fresh(ctx)
        schema = self._schema_entity(schema_name_or_id)

        entity = self._store.lookup_by_id(EntityKind.OBJECT_TYPE, type_name_or_id)
        if entity is not None and entity.schema_id == schema.id:
            return entity.id

        entity = self._store.lookup_by_compound_key(EntityKind.OBJECT_TYPE, compound_key(schema.name, type_name_or_id))
        if entity is None:
            raise AssetsResolverError(
                NOT_FOUND,
                f"object type not found: {type_name_or_id} in schema {schema.name}",
                details={"object_type": type_name_or_id, "schema": schema.name},
            )
        return entity.id

    def resolve_object_type_name(self, type_id: str, ctx: RequestContext | None = None) -> tuple[str, str]:
        """Return ``(object_type_name, schema_name)`` for an object-type id."""

        _require_reference(type_id, "object type id")
        self.ensure_fresh(ctx)
        entity = self._store.lookup_by_id(EntityKind.OBJECT_TYPE, type_id)
        if entity is None:
            raise AssetsResolverError(NOT_FOUND, f"object type id not found: {type_id}", details={"object_type_id": type_id})
        schema = self._store.lookup_by_id(EntityKind.SCHEMA, entity.schema_id)
        return entity.name, schema.name if schema is not None else ""

    def list_object_types(self, schema_name_or_id: str, ctx: RequestContext | None = None) -> list[EntityInfo]:
        _require_reference(schema_name_or_id, "schema")
        self.ensure_fresh(ctx)
        schema = self._schema_entity(schema_name_or_id)
        return sorted(
            (entity for entity in self._store.entities(EntityKind.OBJECT_TYPE) if entity.schema_id == schema.id),
            key=lambda entity: (entity.lookup_name, entity.id),
        )

    # -- objects ----------------------------------------------------------

    def get_object_info(self, object_id: str, ctx: RequestContext | None = None) -> EntityInfo:
        """Return object details, fetching them when not cached or stale."""

        _require_reference(object_id, "object id")
        ctx = ensure_context(ctx)
        self.ensure_fresh(ctx)
        return self._fetch_object(object_id, ctx)

    def _fetch_object(self, object_id: str, ctx: RequestContext) -> EntityInfo:
        cached = self._store.lookup_by_id(EntityKind.OBJECT, object_id)
        if cached is not None and self._store.is_entity_fresh(cached):
            return cached

        ctx.check()
        record = self._client.get_object(ctx, object_id)
        metrics.record_cache_event("object_fetch")
        entity = EntityInfo(
            id=record.id,
            name=record.key,
            kind=EntityKind.OBJECT,
            schema_id=record.schema_id,
            parent_id=record.object_type_id,
            display_name=record.label,
            last_updated=self._clock(),
        )
        self._store.put_object(entity)
        return entity

    def resolve_object_id(self, reference: str, ctx: RequestContext | None = None) -> str:
        """Resolve a numeric id, ``schema/key`` reference, or bare object key.

        Only numeric ids reach the API. Keys are answered from objects this
        process has already fetched by id.
        """

        _require_reference(reference, "object reference")
        if _NUMERIC_REFERENCE.fullmatch(reference):
            ctx = ensure_context(ctx)
            # Refresh failures are not lookup misses and propagate as raised.
            self.ensure_fresh(ctx)
            try:
                self._fetch_object(reference, ctx)
            except AssetsResolverError as exc:
                if exc.interrupted:
                    raise
                raise AssetsResolverError(
                    NOT_FOUND,
                    f"object id not found: {reference}",
                    details={"reference": reference, "cause": exc.code},
                ) from exc
            return reference

        if "/" in reference:
            entity = self._store.lookup_by_compound_key(EntityKind.OBJECT, reference.lower())
            if entity is not None:
                return entity.id
            raise AssetsResolverError(
                NOT_FOUND,
                f"compound reference '{reference}' not found in cache. Use a numeric id instead "
                "(e.g., '384') or access the object by id first to cache it",
                details={"reference": reference},
            )

        entity = self._store.find_object_by_name(reference)
        if entity is not None:
            return entity.id
        raise AssetsResolverError(
            NOT_FOUND,
            f"object key '{reference}' not found in cache. Use a numeric id instead "
            "(e.g., '384') or first access the object by id to cache it",
            details={"reference": reference},
        )

    def describe_object(self, reference: str, ctx: RequestContext | None = None) -> ObjectDescription:
        object_id = self.resolve_object_id(reference, ctx)
        info = self.get_object_info(object_id, ctx)
        schema = self._store.lookup_by_id(EntityKind.SCHEMA, info.schema_id) if info.schema_id else None
        object_type = self._store.lookup_by_id(EntityKind.OBJECT_TYPE, info.parent_id) if info.parent_id else None
        return ObjectDescription(
            reference=reference,
            object_id=info.id,
            object_key=info.name,
            display_name=info.display_name,
            schema_id=info.schema_id,
            schema_name=schema.name if schema is not None else "",
            object_type_id=info.parent_id,
            object_type_name=object_type.name if object_type is not None else "",
            last_updated=info.last_updated,
        )

    # -- diagnostics ------------------------------------------------------

    def get_cache_stats(self) -> CacheStats:
        counts = self._store.counts()
        with self._stats_lock:
            return CacheStats(
                schemas=counts["schemas"],
                object_types=counts["object_types"],
                objects=counts["objects"],
                last_refresh=self._store.last_refresh,
                ttl=self._store.ttl,
                is_stale=self._store.is_stale(),
                last_refresh_source=self._last_source,
                source_cached_at=self._source_cached_at,
                disk_cache_enabled=self._disk_cache is not None,
                disk_loads=self._disk_loads,
                network_refreshes=self._network_refreshes,
                disk_write_failures=self._disk_write_failures,
                failed_schemas=self._failed_schemas,
            )


def _require_reference(value: str, label: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise AssetsResolverError(INVALID_REFERENCE, f"{label} reference may not be empty")
