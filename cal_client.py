"""
Classroom calendar ICS client – plain HTTP GET with timeout + retry/backoff

Exports:
- fetch_text(url, timeout_ms, max_retries, backoff_ms=200, client=None) -> str
- FetchError

Only transport problems live here (DNS, timeouts, non-2xx). Parsing the
text is parser.py's job, so a bad feed and a dead server fail differently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

log = logging.getLogger(__name__)

USER_AGENT = "classroom-calendar/1.0 (+ics mirror)"

# patched in tests to observe backoff without waiting
_sleep = asyncio.sleep


class FetchError(Exception):
    """Raised once every attempt to GET the feed has failed."""

    def __init__(self, url: str, attempts: int, last_error: str):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed to fetch ICS after {attempts} attempt(s): {last_error}")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    if isinstance(exc, httpx.HTTPStatusError):
        r = exc.response
        return f"HTTP {r.status_code} {r.reason_phrase}".strip()
    return f"{type(exc).__name__}: {exc}"


async def _get_once(client: httpx.AsyncClient, url: str, timeout_s: float) -> str:
    # wait_for cancels the in-flight request when the hard timeout elapses
    resp = await asyncio.wait_for(client.get(url), timeout=timeout_s)
    resp.raise_for_status()
    return resp.text


async def fetch_text(
    url: str,
    timeout_ms: int,
    max_retries: int,
    backoff_ms: int = 200,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    GET `url` and return the body text.

    max_retries is the total number of attempts (at least 1). Between
    attempts we sleep backoff_ms, 2*backoff_ms, 4*backoff_ms, ...
    Each attempt starts from scratch.
    """
    attempts = max(1, int(max_retries))
    timeout_s = max(0.001, timeout_ms / 1000.0)

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    last_error = "no attempt made"
    try:
        for attempt in range(1, attempts + 1):
            try:
                text = await _get_once(client, url, timeout_s)
                if attempt > 1:
                    log.info("ICS fetch succeeded on attempt %d/%d", attempt, attempts)
                return text
            except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
                last_error = _describe(e)
                log.warning("ICS fetch attempt %d/%d failed: %s", attempt, attempts, last_error)

            if attempt < attempts:
                delay_s = (backoff_ms * (2 ** (attempt - 1))) / 1000.0
                await _sleep(delay_s)
    finally:
        if own_client:
            await client.aclose()

    raise FetchError(url, attempts, last_error)
