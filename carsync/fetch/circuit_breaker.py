"""Circuit breaker guarding calls to the listings API."""
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(RuntimeError):
    """Raised instead of calling through while the circuit is open."""


class CircuitBreaker:
    """Trips open after ``failure_threshold`` consecutive failures.

    While open every call fails fast with CircuitOpenError. Once ``timeout``
    seconds have passed since the last failure a single trial call goes
    through (HALF_OPEN); its success closes the circuit, its failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.last_failure_time = 0.0
        self._trial_in_flight = False

    def _before_call(self) -> None:
        if self.state == CircuitState.OPEN:
            if self._clock() - self.last_failure_time > self.timeout:
                logger.info("Circuit breaker cooldown elapsed, allowing a trial call")
                self.state = CircuitState.HALF_OPEN
            else:
                raise CircuitOpenError(
                    f"Circuit breaker is OPEN after {self.failures} consecutive failures"
                )
        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError("Circuit breaker is HALF_OPEN, trial call in flight")
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info("Circuit breaker closed")
        self.failures = 0
        self.state = CircuitState.CLOSED

    def _on_failure(self) -> None:
        self.failures += 1
        self.last_failure_time = self._clock()
        if self.state == CircuitState.HALF_OPEN:
            logger.warning("Trial call failed, circuit breaker reopened")
            self.state = CircuitState.OPEN
        elif self.failures >= self.failure_threshold and self.state == CircuitState.CLOSED:
            logger.error(f"Circuit breaker opened after {self.failures} consecutive failures")
            self.state = CircuitState.OPEN

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` unless the circuit is open."""
        self._before_call()
        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        finally:
            self._trial_in_flight = False
        self._on_success()
        return result
