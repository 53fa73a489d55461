"""In-memory lookup tables for resolved entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from .locks import ReadWriteLock
from .models import EntityInfo, EntityKind, compound_key, utc_now

Clock = Callable[[], datetime]

DEFAULT_MEMORY_TTL = timedelta(minutes=5)


@dataclass(slots=True)
class CacheTables:
    """One generation of schema and object-type tables.

    A refresh builds a fresh instance off to the side and hands it to
    :meth:`CacheStore.swap`; instances are never merged.
    """

    schemas: dict[str, EntityInfo] = field(default_factory=dict)
    schemas_by_name: dict[str, EntityInfo] = field(default_factory=dict)
    object_types: dict[str, EntityInfo] = field(default_factory=dict)
    types_by_name: dict[str, EntityInfo] = field(default_factory=dict)

    def add_schema(self, entity: EntityInfo) -> None:
        self.schemas[entity.id] = entity
        self.schemas_by_name[entity.lookup_name] = entity

    def add_object_type(self, entity: EntityInfo) -> None:
        self.object_types[entity.id] = entity
        schema = self.schemas.get(entity.schema_id)
        if schema is not None and schema.name:
            self.types_by_name[compound_key(schema.name, entity.name)] = entity

    def copy(self) -> "CacheTables":
        return CacheTables(
            schemas=dict(self.schemas),
            schemas_by_name=dict(self.schemas_by_name),
            object_types=dict(self.object_types),
            types_by_name=dict(self.types_by_name),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemas": {key: entity.to_dict() for key, entity in self.schemas.items()},
            "schemas_by_name": {key: entity.to_dict() for key, entity in self.schemas_by_name.items()},
            "object_types": {key: entity.to_dict() for key, entity in self.object_types.items()},
            "types_by_name": {key: entity.to_dict() for key, entity in self.types_by_name.items()},
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CacheTables":
        def _table(name: str) -> dict[str, EntityInfo]:
            raw = payload.get(name) or {}
            if not isinstance(raw, Mapping):
                raise ValueError(f"Cache table '{name}' must be an object")
            return {str(key): EntityInfo.from_dict(value) for key, value in raw.items()}

        return cls(
            schemas=_table("schemas"),
            schemas_by_name=_table("schemas_by_name"),
            object_types=_table("object_types"),
            types_by_name=_table("types_by_name"),
        )


class CacheStore:
    """Thread-safe resolver tables with a shared time-to-live."""

    def __init__(self, *, ttl: timedelta = DEFAULT_MEMORY_TTL, clock: Clock = utc_now) -> None:
        self._lock = ReadWriteLock()
        self._tables = CacheTables()
        self._objects: dict[str, EntityInfo] = {}
        self._objects_by_key: dict[str, EntityInfo] = {}
        self._object_keys: dict[str, str] = {}
        self._last_refresh: datetime | None = None
        self._ttl = ttl
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def now(self) -> datetime:
        return self._clock()

    @property
    def last_refresh(self) -> datetime | None:
        with self._lock.read():
            return self._last_refresh

    def is_stale(self) -> bool:
        with self._lock.read():
            if self._last_refresh is None:
                return True
            return self._clock() - self._last_refresh > self._ttl

    def is_entity_fresh(self, entity: EntityInfo) -> bool:
        return self._clock() - entity.last_updated < self._ttl

    def swap(self, tables: CacheTables, *, refreshed_at: datetime) -> None:
        """Install a fully built table generation."""

        with self._lock.write():
            self._tables = tables
            self._last_refresh = refreshed_at

    def snapshot(self) -> CacheTables:
        with self._lock.read():
            return self._tables.copy()

    def lookup_by_id(self, kind: EntityKind, entity_id: str) -> EntityInfo | None:
        with self._lock.read():
            if kind is EntityKind.SCHEMA:
                return self._tables.schemas.get(entity_id)
            if kind is EntityKind.OBJECT_TYPE:
                return self._tables.object_types.get(entity_id)
            return self._objects.get(entity_id)

    def lookup_by_name(self, kind: EntityKind, lowercase_name: str) -> EntityInfo | None:
        # Type and object names are only unique within a scope.
        if kind is not EntityKind.SCHEMA:
            return None
        with self._lock.read():
            return self._tables.schemas_by_name.get(lowercase_name)

    def lookup_by_compound_key(self, kind: EntityKind, key: str) -> EntityInfo | None:
        with self._lock.read():
            if kind is EntityKind.OBJECT_TYPE:
                return self._tables.types_by_name.get(key)
            if kind is EntityKind.OBJECT:
                return self._objects_by_key.get(key)
        return None

    def put_object(self, entity: EntityInfo) -> None:
        """Add one lazily-seen object to the object indexes."""

        with self._lock.write():
            self._objects[entity.id] = entity
            previous_key = self._object_keys.pop(entity.id, None)
            if previous_key is not None:
                self._objects_by_key.pop(previous_key, None)
            schema = self._tables.schemas.get(entity.schema_id) if entity.schema_id else None
            if entity.name and schema is not None:
                key = compound_key(schema.name, entity.name)
                displaced = self._objects_by_key.get(key)
                if displaced is not None and displaced.id != entity.id:
                    self._object_keys.pop(displaced.id, None)
                self._objects_by_key[key] = entity
                self._object_keys[entity.id] = key

    def find_object_by_name(self, name: str) -> EntityInfo | None:
        lowered = name.lower()
        with self._lock.read():
            for entity in self._objects.values():
                if entity.lookup_name == lowered:
                    return entity
        return None

    def entities(self, kind: EntityKind) -> list[EntityInfo]:
        with self._lock.read():
            if kind is EntityKind.SCHEMA:
                return list(self._tables.schemas.values())
            if kind is EntityKind.OBJECT_TYPE:
                return list(self._tables.object_types.values())
            return list(self._objects.values())

    def counts(self) -> dict[str, int]:
        with self._lock.read():
            return {
                "schemas": len(self._tables.schemas),
                "object_types": len(self._tables.object_types),
                "objects": len(self._objects),
            }
