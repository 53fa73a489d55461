from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from assets_resolver.context import RequestContext
from assets_resolver.errors import NOT_FOUND, AssetsResolverError
from assets_resolver.models import ObjectRecord, ObjectTypeRecord, SchemaRecord

SITE_URL = "https://example.atlassian.net"
WORKSPACE_ID = "ws-1"


class MutableClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeAssetsClient:
    """In-memory collaborator with call counters and injectable failures."""

    def __init__(
        self,
        schemas: list[SchemaRecord],
        object_types: dict[str, list[ObjectTypeRecord]],
        objects: dict[str, ObjectRecord] | None = None,
        *,
        workspace_id: str = WORKSPACE_ID,
        site_url: str = SITE_URL,
    ) -> None:
        self.schemas = schemas
        self.object_types = object_types
        self.objects = objects or {}
        self._workspace_id = workspace_id
        self._site_url = site_url
        self.calls: Counter[str] = Counter()
        self.schema_list_error: Exception | None = None
        self.object_type_errors: dict[str, Exception] = {}
        self.object_errors: dict[str, Exception] = {}
        self.on_list_schemas: Callable[[RequestContext], None] | None = None
        self.workspace_contexts: list[RequestContext] = []
        self._lock = threading.Lock()

    @property
    def workspace_id(self) -> str:
        return self._workspace_id

    @property
    def site_url(self) -> str:
        return self._site_url

    def resolve_workspace_id(self, ctx: RequestContext) -> str:
        ctx.check()
        self.workspace_contexts.append(ctx)
        return self._workspace_id

    @property
    def network_calls(self) -> int:
        return self.calls["list_schemas"] + self.calls["list_object_types"] + self.calls["get_object"]

    def list_schemas(self, ctx: RequestContext) -> list[SchemaRecord]:
        with self._lock:
            self.calls["list_schemas"] += 1
        if self.on_list_schemas is not None:
            self.on_list_schemas(ctx)
        if self.schema_list_error is not None:
            raise self.schema_list_error
        return list(self.schemas)

    def list_object_types(self, ctx: RequestContext, schema_id: str) -> list[ObjectTypeRecord]:
        with self._lock:
            self.calls["list_object_types"] += 1
        error = self.object_type_errors.get(schema_id)
        if error is not None:
            raise error
        return list(self.object_types.get(schema_id, []))

    def get_object(self, ctx: RequestContext, object_id: str) -> ObjectRecord:
        with self._lock:
            self.calls["get_object"] += 1
        ctx.check()
        error = self.object_errors.get(object_id)
        if error is not None:
            raise error
        record = self.objects.get(object_id)
        if record is None:
            raise AssetsResolverError(NOT_FOUND, "Assets API resource not found", details={"object_id": object_id})
        return record


def build_fake_client() -> FakeAssetsClient:
    return FakeAssetsClient(
        schemas=[
            SchemaRecord(id="6", name="Facilities"),
            SchemaRecord(id="7", name="IT"),
        ],
        object_types={
            "6": [
                ObjectTypeRecord(id="52", name="Bicycles"),
                ObjectTypeRecord(id="60", name="Servers"),
            ],
            "7": [
                ObjectTypeRecord(id="70", name="Servers"),
                ObjectTypeRecord(id="71", name="Laptops"),
            ],
        },
        objects={
            "384": ObjectRecord(id="384", key="FAC-384", label="Blue bike", object_type_id="52", schema_id="6"),
            "910": ObjectRecord(id="910", key="IT-910", label="Build host", object_type_id="70", schema_id="7"),
        },
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def fake_client() -> FakeAssetsClient:
    return build_fake_client()


@pytest.fixture
def make_resolver(fake_client: FakeAssetsClient, clock: MutableClock):
    from assets_resolver.resolver import Resolver

    def _make(**kwargs) -> Resolver:
        kwargs.setdefault("clock", clock)
        return Resolver(fake_client, **kwargs)

    return _make
