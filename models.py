"""
Classroom calendar Pydantic models

Wire shape matches what the timetable UI already consumes (camelCase keys).
Events are frozen so handing out a list copy is enough to protect the cache.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventTime(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    date_time: str = Field(alias="dateTime")
    time_zone: str = Field(alias="timeZone")


class EventLocation(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    display_name: str = Field(alias="displayName")


class CalendarEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    subject: str
    room: str = ""
    start: EventTime
    end: EventTime
    location: Optional[EventLocation] = None
    description: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CacheSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    events: List[CalendarEvent] = Field(default_factory=list)
    fetched_at: Optional[int] = Field(default=None, alias="fetchedAt")  # epoch ms

    def to_wire(self) -> Dict[str, Any]:
        return {
            "fetchedAt": self.fetched_at,
            "events": [e.to_wire() for e in self.events],
        }


class FetchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    count: int = 0
    kept_previous: bool = Field(default=False, alias="keptPrevious")
    changed: bool = False
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
