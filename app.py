from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from backends import build_backends
from calendar_store import CalendarStore
from config import Settings, is_truthy, load_settings
from query_service import CalendarQueryService, QueryValidationError, RefreshUnauthorized

# ---------------- Logging ----------------
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("calendar")


def build_store(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> CalendarStore:
    return CalendarStore(
        build_backends(settings),
        calendar_url=settings.calendar_url,
        cache_key=settings.cache_key,
        timeout_ms=settings.fetch_timeout_ms,
        retries=settings.fetch_retries,
        backoff_ms=settings.fetch_backoff_ms,
        tz_label=settings.timezone,
        http_client=http_client,
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CalendarStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Wire settings -> store -> query service into a FastAPI app.

    The store is built (and PUBLIC_CALENDAR_URL checked) when the app starts,
    not at import, so `uvicorn app:app` fails fast with a clear message.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        url = cfg.require_calendar_url()
        if not cfg.refresh_token:
            logger.warning("CALENDAR_REFRESH_TOKEN is not set; ?refresh=1 is open to anyone")

        st = store or build_store(cfg, http_client)
        await st.init_store(url, cfg.refresh_interval_ms)
        app.state.store = st
        app.state.query = CalendarQueryService(
            st,
            refresh_token=cfg.refresh_token,
            cold_fetch_timeout_ms=cfg.cold_fetch_timeout_ms,
            tz_label=cfg.timezone,
        )
        try:
            yield
        finally:
            await st.shutdown_store()

    app = FastAPI(title="Classroom Calendar Cache", lifespan=lifespan)

    @app.middleware("http")
    async def timing_and_errors(request: Request, call_next):
        start = time.time()
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            raise
        finally:
            dur_ms = int((time.time() - start) * 1000)
            logger.info("%s %s -> %dms", request.method, request.url.path, dur_ms)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/api/status")
    def api_status(request: Request):
        st: CalendarStore = request.app.state.store
        last = st.last_result.to_wire() if st.last_result else None
        return {
            "initialized": st.initialized,
            "refreshing": st.refreshing,
            "count": len(st.get_events()),
            "fetchedAt": st.get_last_fetched(),
            "lastResult": last,
        }

    @app.get("/api/public-calendar")
    async def api_public_calendar(
        request: Request,
        start: Optional[str] = Query(default=None),
        end: Optional[str] = Query(default=None),
        rooms: Optional[str] = Query(default=None),
        refresh: Optional[str] = Query(default=None),
        token: Optional[str] = Query(default=None),
    ):
        query: CalendarQueryService = request.app.state.query
        try:
            if is_truthy(refresh):
                supplied = token or request.headers.get("x-refresh-token")
                query.authorize_refresh(supplied)
                query.trigger_refresh()
                return JSONResponse(status_code=202, content={"ok": True, "message": "Refresh started"})

            return await query.read(start, end, rooms)
        except QueryValidationError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except RefreshUnauthorized as e:
            return JSONResponse(status_code=401, content={"error": str(e)})
        except Exception as e:
            logger.exception("public-calendar failed")
            return JSONResponse(
                status_code=500,
                content={"error": "Failed to load calendar", "details": f"{type(e).__name__}: {e}"},
            )

    return app


app = create_app()
