"""
Classroom calendar store

One CalendarStore per process. It owns the in-memory snapshot and decides
when to pull, when to keep what it has, and where to persist.

  init_store()       load newest snapshot from backends, kick off a first
                     pull if empty, install the refresh job
  fetch_and_store()  fetch -> parse -> swap snapshot -> write through
  get_events()       copy of the cached events (no I/O)
  get_last_fetched() epoch ms of the last good pull, or None
  spawn_refresh()    fire-and-forget pull with its own logging
  shutdown_store()   stop the job, flush, close backends

Only fetch_and_store replaces the snapshot, and only one pull runs at a
time: callers that arrive while a pull is in flight await that same pull.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence, Set

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from backends import CacheBackend
from cal_client import FetchError, fetch_text
from models import CacheSnapshot, CalendarEvent, FetchResult
from parser import ParseError, parse_events
from scheduler_jobs import install_refresh_job
from utils import events_digest, now_ms

log = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 5 * 60 * 1000


class CalendarStore:
    def __init__(
        self,
        backends: Sequence[CacheBackend],
        *,
        calendar_url: Optional[str] = None,
        cache_key: str = "public-calendar",
        timeout_ms: int = 90_000,
        retries: int = 3,
        backoff_ms: int = 200,
        tz_label: str = "Asia/Tokyo",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.backends = list(backends)
        self.calendar_url = calendar_url
        self.cache_key = cache_key
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.backoff_ms = backoff_ms
        self.tz_label = tz_label
        self.http_client = http_client

        self._snapshot = CacheSnapshot()
        self._digest = events_digest([])
        self.initialized = False
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_result: Optional[FetchResult] = None
        self._inflight: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ---------------- reads ----------------

    def get_events(self) -> List[CalendarEvent]:
        # events are frozen models; a new list is a full defensive copy
        return list(self._snapshot.events)

    def get_last_fetched(self) -> Optional[int]:
        return self._snapshot.fetched_at

    def get_snapshot(self) -> CacheSnapshot:
        return self._snapshot

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ---------------- persistence ----------------

    async def _load(self) -> Optional[CacheSnapshot]:
        for backend in self.backends:
            try:
                snap = await backend.get(self.cache_key)
            except Exception as e:
                log.warning("Backend %s failed on load: %s", backend.name, e)
                continue
            if snap is not None:
                log.info("Loaded %d cached events from %s (fetchedAt=%s)",
                         len(snap.events), backend.name, snap.fetched_at)
                return snap
        return None

    async def _persist(self, snapshot: CacheSnapshot) -> int:
        """Write through to every backend. Returns how many accepted the write."""
        written = 0
        for backend in self.backends:
            try:
                ok = await backend.set(self.cache_key, snapshot)
            except Exception as e:
                log.warning("Backend %s failed on write: %s", backend.name, e)
                ok = False
            if ok:
                written += 1
            else:
                log.warning("Calendar snapshot not persisted to %s", backend.name)
        return written

    def _swap(self, snapshot: CacheSnapshot) -> None:
        self._snapshot = snapshot
        self._digest = events_digest(snapshot.events)

    # ---------------- fetch ----------------

    async def fetch_and_store(
        self,
        url: Optional[str] = None,
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
    ) -> FetchResult:
        """
        Pull the feed and update the cache. Never raises.

        If a pull is already running, wait for it and return its result
        (the arguments of the late caller are ignored).
        """
        if self._inflight is not None and not self._inflight.done():
            log.info("Calendar fetch already in flight; joining it")
            return await asyncio.shield(self._inflight)

        task = asyncio.create_task(self._fetch_and_store_once(url, timeout_ms, retries))
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _fetch_and_store_once(
        self,
        url: Optional[str],
        timeout_ms: Optional[int],
        retries: Optional[int],
    ) -> FetchResult:
        url = url or self.calendar_url
        if not url:
            result = FetchResult(ok=False, error="No calendar URL configured")
            self.last_result = result
            return result

        try:
            text = await fetch_text(
                url,
                timeout_ms if timeout_ms is not None else self.timeout_ms,
                retries if retries is not None else self.retries,
                self.backoff_ms,
                client=self.http_client,
            )
            events = parse_events(text, self.tz_label)
        except (FetchError, ParseError) as e:
            log.error("fetch_and_store error: %s", e)
            result = FetchResult(ok=False, error=str(e))
            self.last_result = result
            return result
        except Exception as e:
            log.exception("fetch_and_store unexpected error")
            result = FetchResult(ok=False, error=f"{type(e).__name__}: {e}")
            self.last_result = result
            return result

        current = self._snapshot
        if not events and current.events:
            log.warning("Calendar feed returned 0 events; keeping previous %d", len(current.events))
            await self._persist(current)
            result = FetchResult(ok=True, count=len(current.events), kept_previous=True)
            self.last_result = result
            return result

        new_digest = events_digest(events)
        changed = new_digest != self._digest
        snapshot = CacheSnapshot(events=events, fetched_at=now_ms())
        self._swap(snapshot)
        await self._persist(snapshot)

        log.info("Calendar cache replaced: %d events (changed=%s)", len(events), changed)
        result = FetchResult(ok=True, count=len(events), changed=changed)
        self.last_result = result
        return result

    # ---------------- background ----------------

    def spawn_refresh(self, reason: str = "manual") -> asyncio.Task:
        """Start a pull without waiting for it. Failures are logged, not lost."""
        task = asyncio.create_task(self.fetch_and_store())
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                log.warning("Calendar refresh (%s) was cancelled", reason)
                return
            exc = t.exception()
            if exc is not None:
                log.error("Calendar refresh (%s) crashed: %s", reason, exc, exc_info=exc)
                return
            r = t.result()
            if not r.ok:
                log.error("Calendar refresh (%s) failed: %s", reason, r.error)
            else:
                log.info("Calendar refresh (%s) done: %d events%s", reason, r.count,
                         " (kept previous)" if r.kept_previous else "")

        task.add_done_callback(_done)
        return task

    # ---------------- lifecycle ----------------

    async def init_store(self, url: Optional[str] = None, interval_ms: int = DEFAULT_INTERVAL_MS) -> None:
        if self.initialized:
            return
        self.initialized = True
        if url:
            self.calendar_url = url

        snap = await self._load()
        if snap is not None:
            self._swap(snap)

        if not self._snapshot.events:
            self.spawn_refresh("initial")

        if self.calendar_url:
            self.scheduler = install_refresh_job(self, self.calendar_url, interval_ms)
        else:
            log.warning("No calendar URL configured; scheduled refresh disabled")

    async def shutdown_store(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        pending = [t for t in (self._inflight, *self._background) if t is not None and not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # a never-filled snapshot would shadow a good one in a history store
        if self._snapshot.events or self._snapshot.fetched_at is not None:
            await self._persist(self._snapshot)
        for backend in self.backends:
            try:
                await backend.close()
            except Exception as e:
                log.warning("Backend %s failed to close: %s", backend.name, e)
        self.initialized = False
