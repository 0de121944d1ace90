"""
Classroom calendar query service

The read path the HTTP layer talks to. It never manages the cache itself;
it asks the CalendarStore for events and, when allowed, for a refresh.

- read(start, end, rooms): cached events filtered by date overlap / rooms
- ensure_warm(): one bounded pull when the cache is still empty
- authorize_refresh(token) / trigger_refresh(): shared-secret refresh
"""

from __future__ import annotations

import asyncio
import datetime as dt
import hmac
import logging
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from calendar_store import CalendarStore
from models import CalendarEvent
from utils import iso_to_dt, parse_query_date

log = logging.getLogger(__name__)


class QueryValidationError(ValueError):
    """Bad query parameters (HTTP 400)."""


class RefreshUnauthorized(Exception):
    """Refresh token missing or wrong (HTTP 401)."""


def _aware(value: Optional[str]) -> Optional[dt.datetime]:
    # stored times are UTC; older caches may lack the offset
    parsed = iso_to_dt(value)
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _event_bounds(ev: CalendarEvent) -> tuple[Optional[dt.datetime], Optional[dt.datetime]]:
    return _aware(ev.start.date_time), _aware(ev.end.date_time)


def filter_range(
    events: Iterable[CalendarEvent],
    start: Optional[dt.datetime],
    end: Optional[dt.datetime],
) -> List[CalendarEvent]:
    """
    Keep events overlapping [start, end]. An event is dropped only if it
    ends before start or starts after end. Events with unreadable times
    are kept; the UI decides what to do with them.
    """
    out: List[CalendarEvent] = []
    for ev in events:
        ev_start, ev_end = _event_bounds(ev)
        if start is not None and ev_end is not None and ev_end < start:
            continue
        if end is not None and ev_start is not None and ev_start > end:
            continue
        out.append(ev)
    return out


def filter_rooms(events: Iterable[CalendarEvent], rooms: Optional[Iterable[str]]) -> List[CalendarEvent]:
    """No filter (or an empty one) means every event, including ones without a room tag."""
    wanted = {r.strip() for r in (rooms or ()) if r and r.strip()}
    if not wanted:
        return list(events)
    return [ev for ev in events if ev.room and ev.room in wanted]


class CalendarQueryService:
    def __init__(
        self,
        store: CalendarStore,
        *,
        refresh_token: Optional[str] = None,
        cold_fetch_timeout_ms: int = 8_000,
        tz_label: str = "Asia/Tokyo",
    ):
        self.store = store
        self.refresh_token = refresh_token
        self.cold_fetch_timeout_ms = cold_fetch_timeout_ms
        self.tz = ZoneInfo(tz_label)

    # ---- refresh ----

    def authorize_refresh(self, token: Optional[str]) -> None:
        if not self.refresh_token:
            log.warning("Refresh requested but CALENDAR_REFRESH_TOKEN is not set; allowing it")
            return
        if not token or not hmac.compare_digest(token.encode("utf-8"), self.refresh_token.encode("utf-8")):
            raise RefreshUnauthorized("Invalid or missing refresh token")

    def trigger_refresh(self) -> asyncio.Task:
        return self.store.spawn_refresh("refresh endpoint")

    # ---- cold cache ----

    async def ensure_warm(self) -> None:
        """If nothing is cached yet, give one pull a short head start."""
        if self.store.get_events():
            return
        timeout_s = max(0.0, self.cold_fetch_timeout_ms / 1000.0)
        pull = self.store.spawn_refresh("cold cache")
        try:
            await asyncio.wait_for(asyncio.shield(pull), timeout=timeout_s)
        except asyncio.TimeoutError:
            log.warning("Cold-cache fetch still running after %.1fs; answering with what we have", timeout_s)

    # ---- reads ----

    def _parse_range(self, start: Optional[str], end: Optional[str]):
        try:
            start_dt = parse_query_date(start, self.tz) if start else None
            end_dt = parse_query_date(end, self.tz, end_of_day=True) if end else None
        except ValueError as e:
            raise QueryValidationError(f"Invalid date: {e}") from e
        if start_dt and end_dt and start_dt > end_dt:
            raise QueryValidationError("start must not be after end")
        return start_dt, end_dt

    async def read(
        self,
        start: Optional[str] = None,
        end: Optional[str] = None,
        rooms: Optional[str] = None,
    ) -> Dict[str, Any]:
        start_dt, end_dt = self._parse_range(start, end)
        room_list = rooms.split(",") if rooms else None

        await self.ensure_warm()

        events = filter_range(self.store.get_events(), start_dt, end_dt)
        events = filter_rooms(events, room_list)
        return {
            "value": [e.to_wire() for e in events],
            "fetchedAt": self.store.get_last_fetched(),
        }
