"""
Classroom calendar external store (SQLite / Postgres)

Tables
------
kv_store_history(id, key, value, created_at)   -- mode "history": insert-only log
kv_store(key PK, value, updated_at)            -- mode "upsert": one row per key

Both modes give the same contract as the disk backend:
  get(key)            -> newest snapshot for key | None
  set(key, snapshot)  -> bool
  close()

Stores
------
SqliteKVStore(path, mode)     sqlite:///relative.db  or  sqlite:////abs/path.db
PostgresKVStore(dsn, mode)    postgres://... / postgresql://...   (asyncpg)

make_kv_store(url, mode) picks one from the URL scheme.

Connection problems never escape: they are logged and the call reports
"unavailable" (None / False). The next call tries to connect again.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Optional

import asyncpg
from starlette.concurrency import run_in_threadpool

from cache_meta import dump_snapshot, normalize_snapshot
from models import CacheSnapshot

log = logging.getLogger(__name__)

MODES = ("history", "upsert")


# -------------------- schema --------------------

SQLITE_SCHEMA = {
    "history": """
        CREATE TABLE IF NOT EXISTS kv_store_history(
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_kv_store_history_key_created_at
            ON kv_store_history(key, created_at DESC);
    """,
    "upsert": """
        CREATE TABLE IF NOT EXISTS kv_store(
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
    """,
}

POSTGRES_SCHEMA = {
    "history": """
        CREATE TABLE IF NOT EXISTS kv_store_history (
            id BIGSERIAL PRIMARY KEY,
            key TEXT NOT NULL,
            value JSONB NOT NULL,
            created_at TIMESTAMPTZ DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS idx_kv_store_history_key_created_at
            ON kv_store_history(key, created_at DESC);
    """,
    "upsert": """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT now()
        );
    """,
}


def _check_mode(mode: str) -> str:
    if mode not in MODES:
        raise ValueError(f"kv mode must be one of {MODES}, got {mode!r}")
    return mode


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# -------------------- SQLite --------------------

class SqliteKVStore:
    """Self-hosted external store: a SQLite file shared by every worker on the box."""

    name = "sqlite"

    def __init__(self, path: str | Path, mode: str = "history"):
        self.path = Path(path)
        self.mode = _check_mode(mode)
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=10, check_same_thread=False)
        con.row_factory = sqlite3.Row
        return con

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as con, con:
            con.executescript(SQLITE_SCHEMA[self.mode])
        self._schema_ready = True

    def _get_sync(self, key: str) -> Optional[CacheSnapshot]:
        self.ensure_schema()
        if self.mode == "history":
            sql = "SELECT value FROM kv_store_history WHERE key=? ORDER BY id DESC LIMIT 1"
        else:
            sql = "SELECT value FROM kv_store WHERE key=?"
        with closing(self._connect()) as con:
            row = con.execute(sql, (key,)).fetchone()
        return normalize_snapshot(row["value"]) if row else None

    def _set_sync(self, key: str, snapshot: CacheSnapshot) -> None:
        self.ensure_schema()
        payload = dump_snapshot(snapshot, indent=None)
        now = _now_iso()
        with closing(self._connect()) as con, con:
            if self.mode == "history":
                con.execute(
                    "INSERT INTO kv_store_history(key, value, created_at) VALUES(?,?,?)",
                    (key, payload, now),
                )
            else:
                con.execute(
                    "INSERT INTO kv_store(key, value, updated_at) VALUES(?,?,?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                    (key, payload, now),
                )

    async def get(self, key: str) -> Optional[CacheSnapshot]:
        try:
            return await run_in_threadpool(self._get_sync, key)
        except (sqlite3.Error, OSError) as e:
            log.warning("SQLite store %s unavailable on read: %s", self.path, e)
            return None

    async def set(self, key: str, snapshot: CacheSnapshot) -> bool:
        try:
            await run_in_threadpool(self._set_sync, key, snapshot)
            return True
        except (sqlite3.Error, OSError) as e:
            log.warning("SQLite store %s unavailable on write: %s", self.path, e)
            return False

    async def close(self) -> None:
        return None


# -------------------- Postgres --------------------

class PostgresKVStore:
    """Hosted external store (Neon, RDS, ...) via an asyncpg pool created on first use."""

    name = "postgres"

    def __init__(self, dsn: str, mode: str = "history", *, connect_timeout: float = 10.0):
        self.dsn = dsn
        self.mode = _check_mode(mode)
        self.connect_timeout = connect_timeout
        self._pool: Optional[asyncpg.Pool] = None
        self._schema_ready = False
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._lock:
            if self._pool is None:
                self._pool = await asyncpg.create_pool(
                    dsn=self.dsn,
                    min_size=1,
                    max_size=2,
                    timeout=self.connect_timeout,
                    command_timeout=self.connect_timeout,
                )
            if not self._schema_ready:
                async with self._pool.acquire() as conn:
                    await conn.execute(POSTGRES_SCHEMA[self.mode])
                self._schema_ready = True
            return self._pool

    async def ensure_schema(self) -> None:
        await self._get_pool()

    async def _reset(self) -> None:
        pool, self._pool = self._pool, None
        self._schema_ready = False
        if pool is not None:
            try:
                await asyncio.wait_for(pool.close(), timeout=self.connect_timeout)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError):
                pool.terminate()

    async def get(self, key: str) -> Optional[CacheSnapshot]:
        if self.mode == "history":
            sql = ("SELECT value FROM kv_store_history WHERE key=$1 "
                   "ORDER BY created_at DESC, id DESC LIMIT 1")
        else:
            sql = "SELECT value FROM kv_store WHERE key=$1"
        try:
            pool = await self._get_pool()
            value = await pool.fetchval(sql, key)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            log.warning("Postgres store unavailable on read: %s: %s", type(e).__name__, e)
            await self._reset()
            return None
        return normalize_snapshot(value)

    async def set(self, key: str, snapshot: CacheSnapshot) -> bool:
        payload = dump_snapshot(snapshot, indent=None)
        if self.mode == "history":
            sql = "INSERT INTO kv_store_history(key, value) VALUES($1, $2::jsonb)"
        else:
            sql = ("INSERT INTO kv_store(key, value, updated_at) VALUES($1, $2::jsonb, now()) "
                   "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at")
        try:
            pool = await self._get_pool()
            await pool.execute(sql, key, payload)
            return True
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            log.warning("Postgres store unavailable on write: %s: %s", type(e).__name__, e)
            await self._reset()
            return False

    async def close(self) -> None:
        await self._reset()


# -------------------- factory --------------------

def make_kv_store(url: str, mode: str = "history"):
    """Pick the external store from the URL scheme. Unknown schemes fail fast."""
    if url.startswith(("postgres://", "postgresql://")):
        return PostgresKVStore(url, mode=mode)
    if url.startswith("sqlite:///"):
        return SqliteKVStore(url[len("sqlite:///"):], mode=mode)
    scheme = url.split(":", 1)[0] if ":" in url else url
    raise ValueError(f"Unsupported DATABASE_URL scheme {scheme!r} (use postgres:// or sqlite:///)")
