"""Run control: termination conditions and limits."""
import time
import logging
from typing import Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RunControl:
    """Decides when the page loop ends and when it must abort."""

    max_pages: int = 3000
    max_consecutive_empty: int = 5
    max_api_errors: int = 20
    stop_after_minutes: Optional[float] = None

    # Internal state
    start_time: float = field(default_factory=time.time)
    consecutive_empty: int = 0
    pages_seen: int = 0

    def should_stop(self, current_page: int) -> tuple[bool, Optional[str]]:
        """Check if the page loop should end. Returns (should_stop, reason)."""
        if current_page > self.max_pages:
            return True, f"Reached max_pages={self.max_pages}"

        if self.consecutive_empty >= self.max_consecutive_empty:
            return True, f"End of data after {self.consecutive_empty} consecutive empty pages"

        if self.time_budget_exhausted():
            return True, f"Reached stop_after_minutes={self.stop_after_minutes}"

        return False, None

    def time_budget_exhausted(self) -> bool:
        if not self.stop_after_minutes:
            return False
        return (time.time() - self.start_time) / 60 >= self.stop_after_minutes

    def error_ceiling_exceeded(self, api_errors: int) -> bool:
        return api_errors > self.max_api_errors

    def record_empty_page(self) -> None:
        """Record an empty or unusable page."""
        self.pages_seen += 1
        self.consecutive_empty += 1

    def record_page(self) -> None:
        """Record a page that returned listings."""
        self.pages_seen += 1
        self.consecutive_empty = 0

    def get_summary(self) -> dict:
        """Get summary statistics."""
        elapsed_minutes = (time.time() - self.start_time) / 60
        return {
            "elapsed_minutes": round(elapsed_minutes, 2),
            "pages_seen": self.pages_seen,
            "consecutive_empty": self.consecutive_empty,
        }
