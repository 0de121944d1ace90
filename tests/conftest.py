"""Shared fixtures: ICS builders, fake HTTP feed, in-memory backend."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from models import CacheSnapshot, CalendarEvent, EventTime

FEED_URL = "https://calendar.example.com/rooms.ics"

VTIMEZONE_TOKYO = [
    "BEGIN:VTIMEZONE",
    "TZID:Asia/Tokyo",
    "BEGIN:STANDARD",
    "DTSTART:19700101T000000",
    "TZOFFSETFROM:+0900",
    "TZOFFSETTO:+0900",
    "TZNAME:JST",
    "END:STANDARD",
    "END:VTIMEZONE",
]


def vevent(uid: str, summary: str, start: str, end: Optional[str] = None, **extra: str) -> List[str]:
    lines = ["BEGIN:VEVENT", f"UID:{uid}", f"SUMMARY:{summary}", f"DTSTART:{start}"]
    if end:
        lines.append(f"DTEND:{end}")
    for k, v in extra.items():
        lines.append(f"{k.upper()}:{v}")
    lines.append("END:VEVENT")
    return lines


def build_ics(*events: List[str], with_timezone: bool = True) -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Test//Rooms//EN"]
    if with_timezone:
        lines += VTIMEZONE_TOKYO
    for ev in events:
        lines += ev
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


def make_event(uid: str, start: str, end: str, room: str = "", subject: str = "Class") -> CalendarEvent:
    return CalendarEvent(
        id=uid,
        subject=subject,
        room=room,
        start=EventTime(date_time=start, time_zone="Asia/Tokyo"),
        end=EventTime(date_time=end, time_zone="Asia/Tokyo"),
    )


class MemoryBackend:
    """In-memory CacheBackend; can be told to fail."""

    def __init__(self, name: str = "memory", snapshot: Optional[CacheSnapshot] = None):
        self.name = name
        self.data: Dict[str, CacheSnapshot] = {}
        self.initial = snapshot
        self.writes: List[CacheSnapshot] = []
        self.fail_get = False
        self.fail_set = False
        self.closed = False

    async def get(self, key: str) -> Optional[CacheSnapshot]:
        if self.fail_get:
            return None
        if key not in self.data and self.initial is not None:
            return self.initial
        return self.data.get(key)

    async def set(self, key: str, snapshot: CacheSnapshot) -> bool:
        if self.fail_set:
            return False
        self.data[key] = snapshot
        self.writes.append(snapshot)
        return True

    async def close(self) -> None:
        self.closed = True


class FakeFeed:
    """Scriptable ICS server behind httpx.MockTransport."""

    def __init__(self, body: str = "", status: int = 200):
        self.body = body
        self.status = status
        self.calls = 0
        self.delay: float = 0.0
        self.gate: Optional[asyncio.Event] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        return httpx.Response(self.status, text=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def ics_two_events() -> str:
    return build_ics(
        vevent("ev-1@example.com", "[305] Linear Algebra",
               "20251110T000000Z", "20251110T013000Z",
               location="Building A", description="Weekly lecture"),
        vevent("ev-2@example.com", "Staff meeting",
               "20251120T000000Z", "20251120T010000Z"),
    )


@pytest.fixture
def ics_empty() -> str:
    return build_ics()


@pytest.fixture
def feed_factory() -> Callable[..., FakeFeed]:
    return FakeFeed


@pytest.fixture
def no_backoff(monkeypatch):
    import cal_client

    delays: List[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr(cal_client, "_sleep", fake_sleep)
    return delays
