from __future__ import annotations

import threading
from datetime import timedelta
from typing import TYPE_CHECKING

from .logging import get_logger

if TYPE_CHECKING:
    from .disk_cache import DiskCache

LOGGER = get_logger(__name__)


class ExpiredCacheSweeper:
    """Background worker that deletes expired snapshot files from the cache directory."""

    def __init__(self, disk_cache: DiskCache, *, interval: timedelta) -> None:
        self._disk_cache = disk_cache
        minimum_interval = max(interval.total_seconds(), 0.1)
        self._interval = timedelta(seconds=minimum_interval)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="assets-resolver-cache-sweeper",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        if not self._thread:
            return
        self._stop_event.set()
        self._thread.join(timeout=self._interval.total_seconds() + 1)
        self._thread = None

    def sweep_once(self) -> int:
        removed = self._disk_cache.clear_expired()
        if removed:
            LOGGER.info(
                "disk_cache.sweep",
                extra={"context": {"removed": removed, "directory": str(self._disk_cache.directory)}},
            )
        return removed

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval.total_seconds()):
            try:
                self.sweep_once()
            except Exception:  # pragma: no cover - logged and retried next interval
                LOGGER.exception("Expired cache sweep failed")
