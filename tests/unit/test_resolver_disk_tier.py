from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from assets_resolver import metrics
from assets_resolver.disk_cache import DiskCache


@pytest.fixture
def disk_cache(tmp_path: Path, clock) -> DiskCache:
    return DiskCache(tmp_path / "cache", ttl=timedelta(hours=24), clock=clock)


def test_second_process_loads_from_disk_without_network(make_resolver, fake_client, disk_cache) -> None:
    first = make_resolver(disk_cache=disk_cache)
    first.ensure_fresh()
    assert fake_client.calls["list_schemas"] == 1

    fake_client.calls.clear()
    second = make_resolver(disk_cache=disk_cache)

    assert second.resolve_schema_id("facilities") == "6"
    assert second.resolve_object_type_id("Facilities", "Bicycles") == "52"
    assert fake_client.network_calls == 0

    stats = second.get_cache_stats()
    assert stats.disk_loads == 1
    assert stats.network_refreshes == 0
    assert stats.last_refresh_source == "disk"
    assert stats.is_stale is False


def test_expired_disk_entry_falls_back_to_network(make_resolver, fake_client, disk_cache, clock) -> None:
    make_resolver(disk_cache=disk_cache).ensure_fresh()
    clock.advance(timedelta(hours=25))
    fake_client.calls.clear()

    resolver = make_resolver(disk_cache=disk_cache)
    resolver.ensure_fresh()

    assert fake_client.calls["list_schemas"] == 1
    assert resolver.get_cache_stats().last_refresh_source == "network"


def test_corrupt_disk_file_is_a_silent_miss(make_resolver, fake_client, disk_cache) -> None:
    path = disk_cache.path_for(fake_client.workspace_id, fake_client.site_url)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")

    resolver = make_resolver(disk_cache=disk_cache)

    assert resolver.resolve_schema_id("IT") == "7"
    assert fake_client.calls["list_schemas"] == 1
    # The refresh replaced the corrupt file with a valid snapshot.
    assert disk_cache.load(fake_client.workspace_id, fake_client.site_url) is not None


def test_force_refresh_bypasses_disk(make_resolver, fake_client, disk_cache) -> None:
    make_resolver(disk_cache=disk_cache).ensure_fresh()
    fake_client.calls.clear()

    resolver = make_resolver(disk_cache=disk_cache)
    resolver.refresh_cache()

    assert fake_client.calls["list_schemas"] == 1
    assert resolver.get_cache_stats().disk_loads == 0


def test_disk_write_failure_is_counted_not_raised(make_resolver, tmp_path: Path, clock) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        resolver = make_resolver(disk_cache=DiskCache(blocker, clock=clock))
        assert resolver.resolve_schema_id("Facilities") == "6"
    finally:
        metrics.install_registry(None)

    assert resolver.get_cache_stats().disk_write_failures == 1
    assert registry.snapshot().cache_events["disk_write_failure"] == 1


def test_workspace_lookup_runs_under_the_refresh_deadline(make_resolver, fake_client, disk_cache) -> None:
    resolver = make_resolver(disk_cache=disk_cache, refresh_timeout=timedelta(seconds=30))

    resolver.ensure_fresh()

    assert fake_client.workspace_contexts
    assert all(ctx.deadline is not None for ctx in fake_client.workspace_contexts)


def test_cancelled_caller_never_reaches_workspace_lookup(make_resolver, fake_client, disk_cache) -> None:
    from assets_resolver.context import RequestContext
    from assets_resolver.errors import CANCELLED, AssetsResolverError

    resolver = make_resolver(disk_cache=disk_cache)
    ctx = RequestContext()
    ctx.cancel()

    with pytest.raises(AssetsResolverError) as excinfo:
        resolver.ensure_fresh(ctx)

    assert excinfo.value.code == CANCELLED
    assert fake_client.workspace_contexts == []
    assert fake_client.network_calls == 0
