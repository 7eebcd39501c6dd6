"""Tests for the page fetcher."""
import asyncio
from types import SimpleNamespace

import httpx
import pytest

from carsync.errors import ApiError, ApiRateLimitError
from carsync.fetch.client import BackoffWait, PageFetcher
from carsync.fetch.endpoints import get_api_headers, get_cars_page_url
from carsync.fetch.rate_limit import TokenBucket
from carsync.jobs.metrics import SyncMetrics


def _fetch(handler, page=1, max_retries=2, metrics=None):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = PageFetcher(
                "https://api.test/v1/",
                "secret",
                TokenBucket(capacity=100, refill_rate=100),
                client=client,
                max_retries=max_retries,
                backoff=BackoffWait(base=0, rate_limit_base=0),
            )
            return await fetcher.fetch_page(page, 30, metrics)

    return asyncio.run(main())


def test_page_url():
    """The page URL carries page and per_page."""
    assert get_cars_page_url("https://api.test/v1/", 3, 30) == "https://api.test/v1/cars?page=3&per_page=30"


def test_headers_carry_both_auth_forms():
    """Bearer token and X-API-Key are both sent."""
    headers = get_api_headers("secret", "carsync/1.0")
    assert headers["Authorization"] == "Bearer secret"
    assert headers["X-API-Key"] == "secret"


def test_fetch_page_returns_data_list():
    """A 200 response yields its data list."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "1"}, {"id": "2"}]})

    metrics = SyncMetrics()
    listings = _fetch(handler, page=7, metrics=metrics)

    assert [item["id"] for item in listings] == ["1", "2"]
    assert seen[0].url.params["page"] == "7"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert metrics.api_requests == 1
    assert metrics.api_errors == 0


def test_rate_limited_then_success_is_retried():
    """A 429 is counted as an API error and retried."""
    responses = [httpx.Response(429), httpx.Response(200, json={"data": [{"id": "1"}]})]

    def handler(request):
        return responses.pop(0)

    metrics = SyncMetrics()
    listings = _fetch(handler, metrics=metrics)

    assert len(listings) == 1
    assert metrics.api_requests == 2
    assert metrics.api_errors == 1


def test_server_error_raises_after_retries():
    """Persistent 5xx raises ApiError after max_retries + 1 attempts."""
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(503)

    metrics = SyncMetrics()
    with pytest.raises(ApiError) as exc_info:
        _fetch(handler, max_retries=2, metrics=metrics)

    assert exc_info.value.status_code == 503
    assert len(calls) == 3
    assert metrics.api_errors == 3


def test_network_error_is_retried_then_raised():
    """Transport errors are retried like HTTP errors."""
    calls = []

    def handler(request):
        calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(httpx.ConnectError):
        _fetch(handler, max_retries=1)
    assert len(calls) == 2


def test_non_json_body_is_an_empty_page():
    """An unparseable body is treated as an empty page."""

    def handler(request):
        return httpx.Response(200, content=b"<html>maintenance</html>")

    assert _fetch(handler) == []


def test_missing_data_list_is_an_empty_page():
    """A body without a data list is treated as an empty page."""

    def handler(request):
        return httpx.Response(200, json={"data": None, "meta": {}})

    assert _fetch(handler) == []


def test_backoff_is_slower_for_rate_limits():
    """Backoff grows by 1.5x per attempt and starts higher after a 429."""
    wait = BackoffWait()

    def state(attempt, exc):
        outcome = SimpleNamespace(exception=lambda: exc)
        return SimpleNamespace(attempt_number=attempt, outcome=outcome)

    assert wait(state(1, ApiError("boom", 500))) == pytest.approx(1.0)
    assert wait(state(2, ApiError("boom", 500))) == pytest.approx(1.5)
    assert wait(state(1, ApiRateLimitError())) == pytest.approx(2.0)
    assert wait(state(2, ApiRateLimitError())) == pytest.approx(3.0)
