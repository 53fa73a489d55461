"""Persisted resolver snapshots scoped by workspace and site."""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from .cache import CacheTables, Clock
from .errors import CACHE_ERROR, AssetsResolverError
from .logging import get_logger
from .models import parse_timestamp, utc_now

logger = get_logger(__name__)

CACHE_FORMAT_VERSION = 1
DEFAULT_DISK_TTL = timedelta(hours=24)
_RESOLVER_SUBDIR = "resolver"
_FILE_PREFIX = "workspace_"
_FILE_SUFFIX = ".json"


class DiskCacheError(AssetsResolverError):
    """Raised when a snapshot cannot be written."""


def cache_key(workspace_id: str, site_url: str) -> str:
    return f"{workspace_id}|{site_url}"


class FileByteStore:
    """Key/value byte storage where each key maps to one file in a directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._directory / f"{_FILE_PREFIX}{digest}{_FILE_SUFFIX}"

    def read(self, key: str) -> bytes | None:
        try:
            return self.path_for(key).read_bytes()
        except FileNotFoundError:
            return None

    def write(self, key: str, data: bytes) -> Path:
        """Write ``data`` atomically; readers never observe a partial file."""

        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        temp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            temp_path.write_bytes(data)
            os.replace(temp_path, path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        return path

    def iter_paths(self) -> Iterator[Path]:
        if not self._directory.is_dir():
            return
        for path in sorted(self._directory.iterdir()):
            if path.is_file() and path.name.startswith(_FILE_PREFIX) and path.suffix == _FILE_SUFFIX:
                yield path

    def remove(self, path: Path) -> None:
        path.unlink(missing_ok=True)


@dataclass(slots=True)
class DiskCacheEntry:
    workspace_id: str
    site_url: str
    cached_at: datetime
    expires_at: datetime
    tables: CacheTables
    version: int = CACHE_FORMAT_VERSION


@dataclass(frozen=True, slots=True)
class CacheFileInfo:
    """Summary of one persisted snapshot, used for cache maintenance."""

    workspace_id: str
    site_url: str
    schema_count: int
    object_type_count: int
    cached_at: datetime
    expires_at: datetime
    is_expired: bool
    size_bytes: int
    file_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "site_url": self.site_url,
            "schema_count": self.schema_count,
            "object_type_count": self.object_type_count,
            "cached_at": self.cached_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_expired": self.is_expired,
            "size_bytes": self.size_bytes,
            "file_name": self.file_name,
        }


class DiskCache:
    """Save and restore resolver tables across process invocations."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        ttl: timedelta = DEFAULT_DISK_TTL,
        clock: Clock = utc_now,
    ) -> None:
        self._store = FileByteStore(Path(cache_dir) / _RESOLVER_SUBDIR)
        self._ttl = ttl
        self._clock = clock

    @property
    def directory(self) -> Path:
        return self._store.directory

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def path_for(self, workspace_id: str, site_url: str) -> Path:
        return self._store.path_for(cache_key(workspace_id, site_url))

    def save(self, workspace_id: str, site_url: str, tables: CacheTables) -> Path:
        cached_at = self._clock()
        payload = {
            "version": CACHE_FORMAT_VERSION,
            "workspace_id": workspace_id,
            "site_url": site_url,
            "cached_at": cached_at.isoformat(),
            "expires_at": (cached_at + self._ttl).isoformat(),
            **tables.to_dict(),
        }
        try:
            data = json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")
            path = self._store.write(cache_key(workspace_id, site_url), data)
        except (OSError, TypeError, ValueError) as exc:
            raise DiskCacheError(
                CACHE_ERROR,
                "Unable to write resolver cache",
                details={"workspace_id": workspace_id, "reason": str(exc)},
            ) from exc
        logger.debug(
            "disk_cache.save",
            extra={"context": {"path": str(path), "schemas": len(tables.schemas), "object_types": len(tables.object_types)}},
        )
        return path

    def load(self, workspace_id: str, site_url: str) -> DiskCacheEntry | None:
        """Return the persisted entry, or ``None`` when it is unusable."""

        context = {"workspace_id": workspace_id, "site_url": site_url}
        try:
            data = self._store.read(cache_key(workspace_id, site_url))
        except OSError as exc:
            logger.warning("disk_cache.load.unreadable", extra={"context": {**context, "reason": str(exc)}})
            return None
        if data is None:
            logger.debug("disk_cache.load.absent", extra={"context": context})
            return None

        try:
            entry = _decode_entry(data)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("disk_cache.load.corrupt", extra={"context": {**context, "reason": str(exc)}})
            return None

        if entry.version != CACHE_FORMAT_VERSION:
            logger.info("disk_cache.load.version_mismatch", extra={"context": {**context, "version": entry.version}})
            return None
        if entry.workspace_id != workspace_id or entry.site_url != site_url:
            logger.warning("disk_cache.load.identity_mismatch", extra={"context": context})
            return None
        if self._clock() - entry.cached_at > self._ttl:
            logger.info("disk_cache.load.expired", extra={"context": {**context, "cached_at": entry.cached_at.isoformat()}})
            return None
        return entry

    def list_entries(self) -> list[CacheFileInfo]:
        now = self._clock()
        infos: list[CacheFileInfo] = []
        for path in self._store.iter_paths():
            try:
                data = path.read_bytes()
                entry = _decode_entry(data)
            except (OSError, ValueError, TypeError, KeyError) as exc:
                logger.warning("disk_cache.list.skipped", extra={"context": {"file": path.name, "reason": str(exc)}})
                continue
            infos.append(
                CacheFileInfo(
                    workspace_id=entry.workspace_id,
                    site_url=entry.site_url,
                    schema_count=len(entry.tables.schemas),
                    object_type_count=len(entry.tables.object_types),
                    cached_at=entry.cached_at,
                    expires_at=entry.expires_at,
                    is_expired=now > entry.expires_at,
                    size_bytes=len(data),
                    file_name=path.name,
                )
            )
        return infos

    def clear_expired(self) -> int:
        removed = 0
        for info in self.list_entries():
            if not info.is_expired:
                continue
            try:
                self._store.remove(self._store.directory / info.file_name)
            except OSError as exc:
                logger.warning("disk_cache.clear.failed", extra={"context": {"file": info.file_name, "reason": str(exc)}})
                continue
            removed += 1
        if removed:
            logger.info("disk_cache.clear_expired", extra={"context": {"removed": removed}})
        return removed

    def clear_all(self) -> int:
        removed = 0
        for path in list(self._store.iter_paths()):
            try:
                self._store.remove(path)
            except OSError as exc:
                logger.warning("disk_cache.clear.failed", extra={"context": {"file": path.name, "reason": str(exc)}})
                continue
            removed += 1
        return removed


def _decode_entry(data: bytes) -> DiskCacheEntry:
    payload = json.loads(data.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Cache file must contain a JSON object")
    return DiskCacheEntry(
        workspace_id=str(payload["workspace_id"]),
        site_url=str(payload["site_url"]),
        cached_at=parse_timestamp(payload["cached_at"]),
        expires_at=parse_timestamp(payload["expires_at"]),
        tables=CacheTables.from_dict(payload),
        version=int(payload.get("version", 0)),
    )
