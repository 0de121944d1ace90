"""
Regex + icalendar formatter: raw ICS text -> [CalendarEvent].

What it extracts per VEVENT:
- id: UID
- room: digits of a leading "[<digits>]" tag in SUMMARY ("" if none)
- subject: SUMMARY with that tag removed (unchanged when there is no tag)
- start / end: UTC ISO strings paired with the display time zone label
- location / description when present

Non-events (VTIMEZONE, VTODO, ...) are dropped. Output order is the order
the VEVENTs appear in the feed; nothing is sorted.
"""

from __future__ import annotations
import datetime as dt
import logging
import re
from typing import List, Optional, Tuple, Union

import pytz
from icalendar import Calendar

from models import CalendarEvent, EventLocation, EventTime
from utils import to_utc_iso

log = logging.getLogger(__name__)

# "[305] Linear Algebra" -> room "305", subject "Linear Algebra"
ROOM_RE = re.compile(r"^\[(\d+)\]\s*(.*)$", re.DOTALL)


class ParseError(Exception):
    """The feed text is not a calendar we can read."""


def split_room(title: Optional[str]) -> Tuple[str, str]:
    """
    Return (room, subject) for an event title.

    Only a single leading numeric tag counts. "[A1] x", "x [305]" and
    "[305][306] x" are all treated as having no room.
    """
    title = title or ""
    m = ROOM_RE.match(title)
    if not m:
        return "", title
    rest = m.group(2)
    if rest.startswith("["):
        return "", title
    return m.group(1), rest


def parse_calendar(text: Union[str, bytes]) -> Calendar:
    try:
        cal = Calendar.from_ical(text)
    except Exception as e:
        raise ParseError(f"Malformed calendar data: {e}") from e
    if getattr(cal, "name", "") != "VCALENDAR":
        raise ParseError(f"Expected VCALENDAR, got {getattr(cal, 'name', '?')}")
    return cal


def _as_utc(value, tz) -> dt.datetime:
    """DTSTART/DTEND value -> aware UTC datetime. Dates and floating times use tz."""
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            value = tz.localize(value)
        return value.astimezone(pytz.utc)
    if isinstance(value, dt.date):
        return tz.localize(dt.datetime.combine(value, dt.time.min)).astimezone(pytz.utc)
    raise ParseError(f"Unsupported date value: {value!r}")


def _event_bounds(comp, tz) -> Optional[Tuple[dt.datetime, dt.datetime]]:
    ds = comp.get("dtstart")
    if ds is None:
        return None
    raw_start = ds.dt
    start = _as_utc(raw_start, tz)

    de = comp.get("dtend")
    dur = comp.get("duration")
    if de is not None:
        end = _as_utc(de.dt, tz)
    elif dur is not None:
        end = start + dur.dt
    elif isinstance(raw_start, dt.date) and not isinstance(raw_start, dt.datetime):
        end = start + dt.timedelta(days=1)
    else:
        end = start

    if end < start:
        log.warning("Event %s ends before it starts; clamping end to start",
                    str(comp.get("uid") or "?"))
        end = start
    return start, end


def _text(comp, key: str) -> Optional[str]:
    v = comp.get(key)
    if v is None:
        return None
    s = str(v)
    return s if s.strip() else None


def format_events(calendar: Calendar, tz_label: str = "Asia/Tokyo") -> List[CalendarEvent]:
    """Calendar -> CalendarEvent list. Pure: same calendar, same list."""
    tz = pytz.timezone(tz_label)
    out: List[CalendarEvent] = []

    for comp in calendar.walk("VEVENT"):
        bounds = _event_bounds(comp, tz)
        if bounds is None:
            log.warning("Skipping event %s without DTSTART", str(comp.get("uid") or "?"))
            continue
        start, end = bounds

        room, subject = split_room(str(comp.get("summary") or ""))
        location = _text(comp, "location")

        out.append(CalendarEvent(
            id=str(comp.get("uid") or ""),
            subject=subject,
            room=room,
            start=EventTime(date_time=to_utc_iso(start), time_zone=tz_label),
            end=EventTime(date_time=to_utc_iso(end), time_zone=tz_label),
            location=EventLocation(display_name=location) if location else None,
            description=_text(comp, "description"),
        ))
    return out


def parse_events(text: Union[str, bytes], tz_label: str = "Asia/Tokyo") -> List[CalendarEvent]:
    """parse_calendar + format_events in one step."""
    return format_events(parse_calendar(text), tz_label)
