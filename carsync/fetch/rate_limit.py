"""Token bucket rate limiter for outbound API calls."""
import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket shared by every request of a run.

    Starts full, so up to ``capacity`` calls go through immediately. After that
    tokens come back at ``refill_rate`` per second and callers sleep until one
    is available.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def available(self) -> float:
        """Tokens currently in the bucket."""
        self._refill()
        return self._tokens

    async def consume(self) -> None:
        """Wait until a token is available, then take it."""
        wait_time = 1.0 / self.refill_rate
        while True:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return
            logger.debug(f"Rate limit reached, waiting {wait_time:.3f}s")
            await asyncio.sleep(wait_time)
