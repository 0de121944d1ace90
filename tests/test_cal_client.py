"""Tests for the ICS HTTP client: timeout, retry, backoff."""

from __future__ import annotations

import httpx
import pytest

from cal_client import FetchError, fetch_text
from conftest import FEED_URL


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestFetchText:
    async def test_returns_body_on_success(self, no_backoff):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == FEED_URL
            return httpx.Response(200, text="BEGIN:VCALENDAR")

        async with _client(handler) as client:
            text = await fetch_text(FEED_URL, 1000, 3, client=client)
        assert text == "BEGIN:VCALENDAR"
        assert no_backoff == []

    async def test_retries_then_succeeds_with_doubling_backoff(self, no_backoff):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, text="ok")

        async with _client(handler) as client:
            text = await fetch_text(FEED_URL, 1000, 3, backoff_ms=200, client=client)

        assert text == "ok"
        assert len(calls) == 3
        assert no_backoff == [0.2, 0.4]

    async def test_gives_up_after_max_retries(self, no_backoff):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404, text="missing")

        async with _client(handler) as client:
            with pytest.raises(FetchError) as excinfo:
                await fetch_text(FEED_URL, 1000, 3, backoff_ms=100, client=client)

        assert len(calls) == 3
        assert no_backoff == [0.1, 0.2]
        assert excinfo.value.attempts == 3
        assert "404" in excinfo.value.last_error
        assert "404" in str(excinfo.value)

    async def test_network_error_is_retried(self, no_backoff):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(FetchError) as excinfo:
                await fetch_text(FEED_URL, 1000, 2, client=client)

        assert len(calls) == 2
        assert "ConnectError" in excinfo.value.last_error

    async def test_hard_timeout_cancels_request(self, no_backoff, feed_factory):
        feed = feed_factory("BEGIN:VCALENDAR")
        feed.delay = 5.0

        async with feed.client() as client:
            with pytest.raises(FetchError) as excinfo:
                await fetch_text(FEED_URL, 50, 1, client=client)

        assert feed.calls == 1
        assert excinfo.value.last_error == "timed out"

    async def test_zero_retries_still_makes_one_attempt(self, no_backoff):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        async with _client(handler) as client:
            with pytest.raises(FetchError):
                await fetch_text(FEED_URL, 1000, 0, client=client)
        assert len(calls) == 1
        assert no_backoff == []
