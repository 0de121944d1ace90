"""
backends.py
-----------
In plain English: this file is where the calendar snapshot goes to survive
a restart.

Every backend stores ONE blob per key (shape in cache_meta.py; the disk
backend keeps a single file at the configured path) and exposes the same
three async calls:
    get(key)             -> CacheSnapshot | None
    set(key, snapshot)   -> bool
    close()

Backends never raise into the store. Problems are logged and reported as
None / False so the store can fall through to the next backend, or just
keep serving what it has in memory.

DiskBackend lives here. The database-backed stores live in db.py.
build_backends() decides which are active, in priority order.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol

from starlette.concurrency import run_in_threadpool

from cache_meta import dump_snapshot, normalize_snapshot
from config import Settings
from db import make_kv_store
from models import CacheSnapshot

log = logging.getLogger(__name__)

READ_ONLY_ERRNOS = (errno.EROFS, errno.EACCES, errno.EPERM)


class CacheBackend(Protocol):
    name: str

    async def get(self, key: str) -> Optional[CacheSnapshot]: ...

    async def set(self, key: str, snapshot: CacheSnapshot) -> bool: ...

    async def close(self) -> None: ...


class DiskBackend:
    """
    One JSON file at exactly the configured path (CALENDAR_CACHE_FILE).

    Writes are atomic (temp file in the same dir + os.replace). The file we
    are about to replace is copied to <path>.bak first. The key only names
    rows in the database stores; the disk file holds a single snapshot.
    """

    name = "disk"

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self.cache_dir = self.path.parent

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".bak")

    # ---- sync internals (run in a worker thread) ----

    def _read_file(self, path: Path) -> Optional[CacheSnapshot]:
        try:
            txt = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("Could not read calendar cache %s: %s", path, e)
            return None
        snap = normalize_snapshot(txt)
        if snap is None:
            log.warning("Calendar cache %s is corrupt; ignoring it", path)
        return snap

    def _get_sync(self, key: str) -> Optional[CacheSnapshot]:
        snap = self._read_file(self.path)
        if snap is None:
            snap = self._read_file(self.backup_path)
            if snap is not None:
                log.info("Recovered calendar cache from %s", self.backup_path)
        return snap

    def backup(self) -> bool:
        """Copy the current file to .bak. Best-effort."""
        if not self.path.exists():
            return False
        try:
            shutil.copy2(self.path, self.backup_path)
            return True
        except OSError as e:
            log.warning("Could not back up calendar cache %s: %s", self.path, e)
            return False

    def _set_sync(self, key: str, snapshot: CacheSnapshot) -> bool:
        target = self.path
        tmp_name = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.backup()
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(dump_snapshot(snapshot))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
            return True
        except OSError as e:
            if e.errno in READ_ONLY_ERRNOS:
                log.error(
                    "Calendar cache directory %s is not writable (%s). On read-only or "
                    "serverless hosts set CALENDAR_CACHE_FILE to a writable path "
                    "(e.g. under /tmp) or enable the external store (DATABASE_URL).",
                    self.cache_dir, e.strerror or e,
                )
            else:
                log.error("Failed to write calendar cache %s: %s", target, e)
            return False
        finally:
            if tmp_name:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    # ---- async contract ----

    async def get(self, key: str) -> Optional[CacheSnapshot]:
        return await run_in_threadpool(self._get_sync, key)

    async def set(self, key: str, snapshot: CacheSnapshot) -> bool:
        return await run_in_threadpool(self._set_sync, key, snapshot)

    async def close(self) -> None:
        return None


def build_backends(settings: Settings) -> List[CacheBackend]:
    """
    Priority order for reads; every entry is a write-through target.

      external store (if CALENDAR_KV_ENABLED or a database URL is set)
      disk
    """
    backends: List[CacheBackend] = []
    if settings.external_store_enabled:
        if settings.database_url:
            backends.append(make_kv_store(settings.database_url, mode=settings.kv_mode))
        else:
            log.warning("CALENDAR_KV_ENABLED is set but DATABASE_URL is missing; using disk only")
    backends.append(DiskBackend(settings.cache_path))
    log.info("Cache backends: %s", ", ".join(b.name for b in backends))
    return backends
