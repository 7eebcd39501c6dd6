"""FIFO concurrency limiter for page pipelines."""
import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """Runs at most ``limit`` coroutines at once, queueing the rest in order."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._running = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return len(self._waiters)

    async def _acquire(self) -> None:
        if self._running < self.limit and not self._waiters:
            self._running += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Slot was already handed over, pass it on
            if waiter.done() and not waiter.cancelled():
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Running count is transferred to the next task
                waiter.set_result(None)
                return
        self._running -= 1

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once a slot is free and return its result."""
        await self._acquire()
        try:
            return await fn()
        finally:
            self._release()
