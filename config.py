"""
Classroom calendar config loader

Reads settings from .env (python-dotenv) and the process environment.
Values are read at call time (load_settings) so tests and long-lived
workers see the current environment. Safe defaults let the app boot with
only PUBLIC_CALENDAR_URL set.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

log = logging.getLogger(__name__)

DEFAULT_CACHE_FILE = os.path.join(tempfile.gettempdir(), "public-calendar.json")
DEFAULT_CACHE_KEY = "public-calendar"
TRUTHY = ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("%s=%r is not an integer; using %d", name, raw, default)
        return default


def is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in TRUTHY


def _env_flag(name: str) -> bool:
    return is_truthy(os.getenv(name))


class Settings(BaseModel):
    # --- ICS source ---
    calendar_url: Optional[str] = None
    refresh_token: Optional[str] = None

    # --- Fetch policy ---
    fetch_timeout_ms: int = 90_000
    fetch_retries: int = 3
    fetch_backoff_ms: int = 200
    refresh_interval_ms: int = 5 * 60 * 1000
    cold_fetch_timeout_ms: int = 8_000

    # --- Display ---
    timezone: str = "Asia/Tokyo"

    # --- Persistence ---
    cache_file: str = DEFAULT_CACHE_FILE
    cache_key: str = DEFAULT_CACHE_KEY  # row key in the external store
    kv_enabled: bool = False
    database_url: Optional[str] = None
    kv_mode: str = "history"

    log_level: str = "INFO"

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_file).expanduser()

    @property
    def external_store_enabled(self) -> bool:
        return self.kv_enabled or bool(self.database_url)

    def require_calendar_url(self) -> str:
        if not self.calendar_url:
            raise RuntimeError("PUBLIC_CALENDAR_URL is not set in .env")
        return self.calendar_url


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    kv_mode = (os.getenv("CALENDAR_KV_MODE") or "history").strip().lower()
    if kv_mode not in ("history", "upsert"):
        log.warning("CALENDAR_KV_MODE=%r is not history|upsert; using history", kv_mode)
        kv_mode = "history"

    return Settings(
        calendar_url=(os.getenv("PUBLIC_CALENDAR_URL") or "").strip() or None,
        refresh_token=os.getenv("CALENDAR_REFRESH_TOKEN") or None,
        fetch_timeout_ms=_env_int("CALENDAR_FETCH_TIMEOUT_MS", 90_000),
        fetch_retries=_env_int("CALENDAR_FETCH_RETRIES", 3),
        fetch_backoff_ms=_env_int("CALENDAR_FETCH_BACKOFF_MS", 200),
        refresh_interval_ms=_env_int("CALENDAR_REFRESH_INTERVAL_MS", 5 * 60 * 1000),
        cold_fetch_timeout_ms=_env_int("CALENDAR_COLD_FETCH_TIMEOUT_MS", 8_000),
        timezone=os.getenv("CALENDAR_TIMEZONE", "Asia/Tokyo"),
        cache_file=os.getenv("CALENDAR_CACHE_FILE") or DEFAULT_CACHE_FILE,
        cache_key=(os.getenv("CALENDAR_CACHE_KEY") or "").strip() or DEFAULT_CACHE_KEY,
        kv_enabled=_env_flag("CALENDAR_KV_ENABLED"),
        database_url=os.getenv("DATABASE_URL") or os.getenv("NEON_DATABASE_URL") or None,
        kv_mode=kv_mode,
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
