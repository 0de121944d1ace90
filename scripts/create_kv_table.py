"""
Create the external-store tables ahead of the first deploy (after `pip install -e .`).

    DATABASE_URL="postgres://..." python scripts/create_kv_table.py
    DATABASE_URL="sqlite:///data/calendar.db" CALENDAR_KV_MODE=upsert python scripts/create_kv_table.py

The stores create their tables on first use as well; this just surfaces
connection / permission problems before the app is live.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from config import load_settings
from db import PostgresKVStore, make_kv_store

log = logging.getLogger("create_kv_table")


async def main() -> int:
    settings = load_settings()
    if not settings.database_url:
        log.error("DATABASE_URL or NEON_DATABASE_URL is required")
        return 1

    store = make_kv_store(settings.database_url, mode=settings.kv_mode)
    try:
        if isinstance(store, PostgresKVStore):
            await store.ensure_schema()
        else:
            store.ensure_schema()
    except Exception as e:
        log.error("Migration failed: %s", e)
        return 2
    finally:
        await store.close()

    log.info("%s tables ensured (mode=%s)", store.name, settings.kv_mode)
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    sys.exit(asyncio.run(main()))
