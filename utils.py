"""
Classroom calendar utility helpers

Shared datetime / digest functions used by parser.py, calendar_store.py
and query_service.py
"""

from __future__ import annotations
import datetime as dt
import hashlib
import json
import time
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from models import CalendarEvent


# ---- clocks ----

def now_ms() -> int:
    """Milliseconds since the epoch (same unit the UI uses for fetchedAt)."""
    return int(time.time() * 1000)


# ---- datetime parsing/conversion ----

def iso_to_dt(s: Optional[str]) -> Optional[dt.datetime]:
    """Parse ISO string to datetime, handling Z suffix."""
    if not s:
        return None
    try:
        s = s.replace("Z", "+00:00")
        return dt.datetime.fromisoformat(s)
    except Exception:
        return None


def to_utc_iso(d: dt.datetime) -> str:
    """Aware datetime -> '2025-11-10T00:00:00.000Z'."""
    if d.tzinfo is None:
        d = d.replace(tzinfo=dt.timezone.utc)
    d = d.astimezone(dt.timezone.utc)
    return d.strftime("%Y-%m-%dT%H:%M:%S.") + f"{d.microsecond // 1000:03d}Z"


def parse_query_date(value: str, tz: ZoneInfo, *, end_of_day: bool = False) -> dt.datetime:
    """
    Parse a ?start= / ?end= value into an aware datetime.

    Accepts a plain date ('2025-11-15') or an ISO datetime. A plain date
    is the start of that day in `tz`, or its last instant when end_of_day
    is set. Naive datetimes are read in `tz`. Raises ValueError.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty date")

    if "T" not in raw and " " not in raw:
        day = dt.date.fromisoformat(raw)
        if end_of_day:
            return dt.datetime.combine(day, dt.time.max, tzinfo=tz)
        return dt.datetime.combine(day, dt.time.min, tzinfo=tz)

    parsed = iso_to_dt(raw)
    if parsed is None:
        raise ValueError(f"not an ISO date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


# ---- change detection ----

def events_digest(events: Iterable[CalendarEvent]) -> str:
    """Stable hash over the serialized event list (order-sensitive)."""
    blob = json.dumps([e.to_wire() for e in events], sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()
