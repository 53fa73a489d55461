"""Domain models for resolved entities and API records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .errors import UPSTREAM_ERROR, AssetsResolverError


class EntityKind(str, Enum):
    """Kinds of entity the resolver knows about."""

    SCHEMA = "schema"
    OBJECT_TYPE = "object_type"
    OBJECT = "object"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compound_key(parent_name: str, child_name: str) -> str:
    """Return the case-insensitive ``parent/child`` lookup key."""

    return f"{parent_name.lower()}/{child_name.lower()}"


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class EntityInfo:
    """Canonical record for one resolved schema, object type, or object."""

    id: str
    name: str
    kind: EntityKind
    schema_id: str = ""
    parent_id: str = ""
    display_name: str = ""
    last_updated: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Entity id may not be empty")
        self.kind = EntityKind(self.kind)

    @property
    def lookup_name(self) -> str:
        return self.name.lower()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.kind.value,
            "last_updated": _format_timestamp(self.last_updated),
        }
        if self.display_name:
            payload["display_name"] = self.display_name
        if self.schema_id:
            payload["schema_id"] = self.schema_id
        if self.parent_id:
            payload["parent_id"] = self.parent_id
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EntityInfo":
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            kind=EntityKind(payload["type"]),
            schema_id=str(payload.get("schema_id") or ""),
            parent_id=str(payload.get("parent_id") or ""),
            display_name=str(payload.get("display_name") or ""),
            last_updated=parse_timestamp(payload["last_updated"]),
        )


def _required_field(payload: Any, key: str, *, record: str) -> str:
    if not isinstance(payload, Mapping):
        raise AssetsResolverError(UPSTREAM_ERROR, f"Unexpected {record} payload: expected an object")
    value = payload.get(key)
    if value is None or str(value) == "":
        raise AssetsResolverError(
            UPSTREAM_ERROR,
            f"Unexpected {record} payload: missing '{key}'",
            details={"record": record, "field": key},
        )
    return str(value)


@dataclass(frozen=True, slots=True)
class SchemaRecord:
    id: str
    name: str

    @classmethod
    def from_payload(cls, payload: Any) -> "SchemaRecord":
        return cls(
            id=_required_field(payload, "id", record="schema"),
            name=_required_field(payload, "name", record="schema"),
        )


@dataclass(frozen=True, slots=True)
class ObjectTypeRecord:
    id: str
    name: str

    @classmethod
    def from_payload(cls, payload: Any) -> "ObjectTypeRecord":
        return cls(
            id=_required_field(payload, "id", record="object type"),
            name=_required_field(payload, "name", record="object type"),
        )


@dataclass(frozen=True, slots=True)
class ObjectRecord:
    """Object detail as returned by the object endpoint."""

    id: str
    key: str
    label: str = ""
    object_type_id: str = ""
    schema_id: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "ObjectRecord":
        object_id = _required_field(payload, "id", record="object")
        object_type = payload.get("objectType")
        object_type_id = ""
        schema_id = ""
        if isinstance(object_type, Mapping):
            object_type_id = str(object_type.get("id") or "")
            schema_id = str(object_type.get("objectSchemaId") or "")
        return cls(
            id=object_id,
            key=str(payload.get("objectKey") or ""),
            label=str(payload.get("label") or ""),
            object_type_id=object_type_id,
            schema_id=schema_id,
        )
