"""
Classroom calendar APScheduler jobs

- Every CALENDAR_REFRESH_INTERVAL_MS (default 5 minutes) pull the ICS feed
  through CalendarStore.fetch_and_store().
- A failed pull is logged; the job keeps running and the cache keeps
  serving the last good snapshot.
- Overlapping ticks are coalesced (max_instances=1) and the store's
  single-flight guard joins a tick to any manual refresh already running.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from calendar_store import CalendarStore

log = logging.getLogger(__name__)
REFRESH_JOB_ID = "calendar_refresh"


async def refresh_calendar(store: "CalendarStore", url: str) -> None:
    try:
        result = await store.fetch_and_store(url)
    except Exception as e:
        log.exception("Scheduled calendar fetch crashed: %s", e)
        return
    if not result.ok:
        log.error("Scheduled calendar fetch failed: %s", result.error)
    elif result.kept_previous:
        log.warning("Scheduled calendar fetch returned no events; kept previous %d", result.count)
    else:
        log.info("Scheduled calendar fetch stored %d events (changed=%s)", result.count, result.changed)


def install_refresh_job(store: "CalendarStore", url: str, interval_ms: int) -> AsyncIOScheduler:
    """Start an AsyncIOScheduler with the recurring refresh job. Needs a running loop."""
    seconds = max(1.0, interval_ms / 1000.0)
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        refresh_calendar,
        "interval",
        seconds=seconds,
        args=(store, url),
        id=REFRESH_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    log.info("Calendar refresh job installed (every %.0fs)", seconds)
    return scheduler
