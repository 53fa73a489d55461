from __future__ import annotations

import threading
import time

import pytest

from assets_resolver.context import RequestContext
from assets_resolver.errors import CANCELLED, UPSTREAM_ERROR, AssetsResolverError


def test_concurrent_stale_callers_share_one_refresh(make_resolver, fake_client) -> None:
    started = threading.Event()
    release = threading.Event()

    def _slow_list(_ctx: RequestContext) -> None:
        started.set()
        release.wait(timeout=5)

    fake_client.on_list_schemas = _slow_list
    resolver = make_resolver()
    results: list[str] = []
    errors: list[BaseException] = []

    def _worker() -> None:
        try:
            results.append(resolver.resolve_schema_id("facilities"))
        except BaseException as exc:  # pragma: no cover - surfaced by assertion
            errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    assert started.wait(timeout=5)
    time.sleep(0.2)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert not errors
    assert results == ["6"] * 8
    assert fake_client.calls["list_schemas"] == 1


def test_waiting_caller_observes_cancellation(make_resolver, fake_client) -> None:
    started = threading.Event()
    release = threading.Event()

    def _slow_list(_ctx: RequestContext) -> None:
        started.set()
        release.wait(timeout=5)

    fake_client.on_list_schemas = _slow_list
    resolver = make_resolver()
    refresher = threading.Thread(target=resolver.ensure_fresh)
    refresher.start()
    assert started.wait(timeout=5)

    waiter_ctx = RequestContext()
    outcome: list[AssetsResolverError] = []

    def _waiter() -> None:
        try:
            resolver.ensure_fresh(waiter_ctx)
        except AssetsResolverError as exc:
            outcome.append(exc)

    waiter = threading.Thread(target=_waiter)
    waiter.start()
    time.sleep(0.05)
    waiter_ctx.cancel()
    waiter.join(timeout=2)
    try:
        assert not waiter.is_alive()
        assert [exc.code for exc in outcome] == [CANCELLED]
    finally:
        release.set()
        refresher.join(timeout=5)

    assert resolver.store.is_stale() is False


def test_callers_queued_behind_a_failed_refresh_share_its_error(make_resolver, fake_client) -> None:
    started = threading.Event()
    release = threading.Event()

    def _failing_list(_ctx: RequestContext) -> None:
        started.set()
        release.wait(timeout=5)
        raise AssetsResolverError(UPSTREAM_ERROR, "Assets API returned HTTP 503")

    fake_client.on_list_schemas = _failing_list
    resolver = make_resolver()
    outcome: list[str] = []
    lock = threading.Lock()

    def _worker() -> None:
        try:
            resolver.ensure_fresh()
        except AssetsResolverError as exc:
            with lock:
                outcome.append(exc.code)

    first = threading.Thread(target=_worker)
    first.start()
    assert started.wait(timeout=5)
    waiters = [threading.Thread(target=_worker) for _ in range(5)]
    for thread in waiters:
        thread.start()
    time.sleep(0.2)
    release.set()
    for thread in [first, *waiters]:
        thread.join(timeout=5)

    assert outcome == [UPSTREAM_ERROR] * 6
    assert fake_client.calls["list_schemas"] == 1
    assert resolver.store.is_stale() is True


def test_later_caller_retries_after_a_failed_refresh(make_resolver, fake_client) -> None:
    fake_client.schema_list_error = AssetsResolverError(UPSTREAM_ERROR, "Assets API returned HTTP 503")
    resolver = make_resolver()

    with pytest.raises(AssetsResolverError) as excinfo:
        resolver.ensure_fresh()
    assert excinfo.value.code == UPSTREAM_ERROR

    fake_client.schema_list_error = None
    assert resolver.resolve_schema_id("facilities") == "6"
    assert fake_client.calls["list_schemas"] == 2
