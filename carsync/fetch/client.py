"""HTTP page fetcher with rate limiting, timeouts and bounded retries."""
import logging
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from carsync.errors import ApiError, ApiRateLimitError
from carsync.fetch.endpoints import get_api_headers, get_cars_page_url
from carsync.fetch.rate_limit import TokenBucket
from carsync.jobs.metrics import SyncMetrics

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ApiError, httpx.TransportError)


class BackoffWait:
    """Exponential backoff, slower when the API said 429."""

    def __init__(self, base: float = 1.0, rate_limit_base: float = 2.0, factor: float = 1.5):
        self.base = base
        self.rate_limit_base = rate_limit_base
        self.factor = factor

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        base = self.rate_limit_base if isinstance(exc, ApiRateLimitError) else self.base
        return base * self.factor ** (retry_state.attempt_number - 1)


class PageFetcher:
    """Fetches pages of raw listings from the external API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        rate_limiter: TokenBucket,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        max_retries: int = 2,
        backoff: Optional[BackoffWait] = None,
        user_agent: str = "carsync/1.0",
    ):
        self.base_url = base_url
        self.headers = get_api_headers(api_key, user_agent)
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff or BackoffWait()
        self._owns_client = client is None
        if client is None:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
            )
            client = httpx.AsyncClient(http2=True, timeout=timeout, limits=limits)
        self.client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch_page(
        self,
        page: int,
        page_size: int,
        metrics: Optional[SyncMetrics] = None,
    ) -> list[dict[str, Any]]:
        """Fetch one page of listings, retrying transient failures."""
        url = get_cars_page_url(self.base_url, page, page_size)
        listings: list[dict[str, Any]] = []

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self.backoff,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                listings = await self._fetch_once(url, page, metrics)
        return listings

    async def _fetch_once(
        self,
        url: str,
        page: int,
        metrics: Optional[SyncMetrics],
    ) -> list[dict[str, Any]]:
        await self.rate_limiter.consume()
        if metrics:
            metrics.api_requests += 1

        try:
            response = await self.client.get(url, headers=self.headers, timeout=self.timeout)
        except httpx.TransportError as e:
            if metrics:
                metrics.api_errors += 1
            logger.warning(f"Network error for page {page}: {type(e).__name__}: {e}")
            raise

        if response.status_code == 429:
            if metrics:
                metrics.api_errors += 1
            logger.warning(f"Rate limited by upstream on page {page}")
            raise ApiRateLimitError()

        if not response.is_success:
            if metrics:
                metrics.api_errors += 1
            raise ApiError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        return self._parse_listings(response, page)

    def _parse_listings(self, response: httpx.Response, page: int) -> list[dict[str, Any]]:
        """Extract the ``data`` list; anything else counts as an empty page."""
        try:
            body = response.json()
        except ValueError:
            logger.warning(f"Page {page} returned a non-JSON body, treating as empty")
            return []

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            logger.warning(f"Page {page} has no data list, treating as empty")
            return []
        return data

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.info(
            f"Retrying in {delay:.2f}s (attempt {retry_state.attempt_number} failed: {exc})"
        )
