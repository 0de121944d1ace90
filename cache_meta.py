"""
cache_meta.py
-------------
In plain English: this file knows what a stored calendar snapshot looks
like, independent of WHERE it is stored (disk file, SQLite row, Postgres
row).

One blob per key:
    {
      "fetchedAt": 1731200000000,   # epoch ms of the last good pull (or null)
      "events": [...]               # CalendarEvent wire dicts
    }

Why keep this separate?
- Every backend reads and writes the same shape, so the JSON quirks live in
  one place.
- It "normalizes" whatever a backend hands back (older list-only caches,
  JSON strings, JSONB dicts) into a CacheSnapshot, so the store can assume
  it has a clean snapshot or nothing.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from models import CacheSnapshot

log = logging.getLogger(__name__)


def normalize_snapshot(raw: Any) -> Optional[CacheSnapshot]:
    """
    Take whatever a backend returned and give back a CacheSnapshot.

    The stored value might be:
      - a dict:         { "fetchedAt": ..., "events": [ ... ] }
      - a plain list:   [ {...}, {...} ]   (fetchedAt unknown)
      - a JSON string / bytes of either of the above

    Anything unreadable -> None, which callers treat as "no cache here".
    """
    if raw is None:
        return None

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None

    if isinstance(raw, list):
        raw = {"events": raw, "fetchedAt": None}
    if not isinstance(raw, dict) or not isinstance(raw.get("events"), list):
        return None

    try:
        return CacheSnapshot.model_validate(raw)
    except ValidationError as e:
        log.warning("Discarding unreadable cache snapshot: %s", e.errors()[:3])
        return None


def dump_snapshot(snapshot: CacheSnapshot, *, indent: Optional[int] = 2) -> str:
    """Serialize for storage: {"fetchedAt": ..., "events": [...]}, UTF-8 safe."""
    return json.dumps(snapshot.to_wire(), ensure_ascii=False, indent=indent)
