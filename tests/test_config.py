from __future__ import annotations

import logging
from pathlib import Path

import pytest

from config import DEFAULT_CACHE_FILE, Settings, is_truthy, load_settings

ENV_VARS = (
    "PUBLIC_CALENDAR_URL",
    "CALENDAR_REFRESH_TOKEN",
    "CALENDAR_FETCH_TIMEOUT_MS",
    "CALENDAR_FETCH_RETRIES",
    "CALENDAR_FETCH_BACKOFF_MS",
    "CALENDAR_REFRESH_INTERVAL_MS",
    "CALENDAR_COLD_FETCH_TIMEOUT_MS",
    "CALENDAR_TIMEZONE",
    "CALENDAR_CACHE_FILE",
    "CALENDAR_CACHE_KEY",
    "CALENDAR_KV_ENABLED",
    "CALENDAR_KV_MODE",
    "DATABASE_URL",
    "NEON_DATABASE_URL",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = load_settings()
    assert s.calendar_url is None
    assert s.refresh_token is None
    assert s.fetch_timeout_ms == 90_000
    assert s.fetch_retries == 3
    assert s.fetch_backoff_ms == 200
    assert s.refresh_interval_ms == 300_000
    assert s.cold_fetch_timeout_ms == 8_000
    assert s.timezone == "Asia/Tokyo"
    assert s.cache_file == DEFAULT_CACHE_FILE
    assert s.kv_mode == "history"
    assert s.external_store_enabled is False


def test_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("PUBLIC_CALENDAR_URL", "  https://example.com/a.ics  ")
    monkeypatch.setenv("CALENDAR_REFRESH_TOKEN", "s3cret")
    monkeypatch.setenv("CALENDAR_FETCH_TIMEOUT_MS", "5000")
    monkeypatch.setenv("CALENDAR_FETCH_RETRIES", "5")
    monkeypatch.setenv("CALENDAR_CACHE_FILE", str(tmp_path / "cal.json"))
    monkeypatch.setenv("CALENDAR_KV_ENABLED", "yes")
    monkeypatch.setenv("CALENDAR_KV_MODE", "UPSERT")
    monkeypatch.setenv("NEON_DATABASE_URL", "postgresql://u@h/db")

    s = load_settings()

    assert s.calendar_url == "https://example.com/a.ics"
    assert s.refresh_token == "s3cret"
    assert s.fetch_timeout_ms == 5000
    assert s.fetch_retries == 5
    assert s.kv_enabled is True
    assert s.kv_mode == "upsert"
    assert s.database_url == "postgresql://u@h/db"
    assert s.cache_path == tmp_path / "cal.json"
    assert s.cache_key == "public-calendar"


def test_database_url_wins_over_neon(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://primary/db")
    monkeypatch.setenv("NEON_DATABASE_URL", "postgresql://neon/db")
    assert load_settings().database_url == "postgresql://primary/db"


def test_bad_integer_falls_back_with_warning(monkeypatch, caplog):
    monkeypatch.setenv("CALENDAR_FETCH_RETRIES", "three")
    with caplog.at_level(logging.WARNING):
        s = load_settings()
    assert s.fetch_retries == 3
    assert "CALENDAR_FETCH_RETRIES" in caplog.text


def test_unknown_kv_mode_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("CALENDAR_KV_MODE", "append")
    with caplog.at_level(logging.WARNING):
        assert load_settings().kv_mode == "history"
    assert "CALENDAR_KV_MODE" in caplog.text


def test_require_calendar_url():
    with pytest.raises(RuntimeError, match="PUBLIC_CALENDAR_URL"):
        Settings().require_calendar_url()
    assert Settings(calendar_url="https://x/y.ics").require_calendar_url() == "https://x/y.ics"


def test_cache_key_is_independent_of_file_name(monkeypatch, tmp_path):
    monkeypatch.setenv("CALENDAR_CACHE_FILE", str(tmp_path / "calendar-cache.dat"))
    s = load_settings()
    assert s.cache_path == tmp_path / "calendar-cache.dat"
    assert s.cache_key == "public-calendar"

    monkeypatch.setenv("CALENDAR_CACHE_KEY", "rooms-east")
    assert load_settings().cache_key == "rooms-east"


def test_default_cache_path():
    assert Settings().cache_path == Path(DEFAULT_CACHE_FILE)


@pytest.mark.parametrize("value, expected", [("1", True), (" Yes ", True), ("on", True), ("0", False), ("", False), (None, False)])
def test_is_truthy(value, expected):
    assert is_truthy(value) is expected
