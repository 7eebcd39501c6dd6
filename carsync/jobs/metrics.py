"""Metrics tracking for sync progress."""
import time
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PerformanceTargets:
    """Thresholds a healthy full sync is expected to meet."""

    max_total_minutes: float = 25.0
    min_pages_per_sec: float = 10.0
    min_rows_per_sec: float = 2000.0
    max_error_rate: float = 0.05


def per_second(count: float, elapsed_seconds: float) -> float:
    """Throughput of ``count`` items over ``elapsed_seconds``."""
    if elapsed_seconds <= 0:
        return 0.0
    return count / elapsed_seconds


def eta_seconds(current_page: int, pages_per_sec: float, estimated_total_pages: int) -> float:
    """Seconds left to reach ``estimated_total_pages`` at the current pace."""
    if pages_per_sec <= 0:
        return 0.0
    remaining = max(estimated_total_pages - current_page, 0)
    return remaining / pages_per_sec


def error_rate(api_errors: int, db_errors: int, api_requests: int) -> float:
    return (api_errors + db_errors) / max(1, api_requests)


def check_targets(summary: Dict[str, Any], targets: PerformanceTargets = PerformanceTargets()) -> Dict[str, bool]:
    """Evaluate a run summary against the targets.

    Returns one flag per check plus ``passed``, which is true only when every
    check passed.
    """
    checks = {
        "time_target": summary["total_minutes"] <= targets.max_total_minutes,
        "pages_per_sec_target": summary["pages_per_sec"] >= targets.min_pages_per_sec,
        "rows_per_sec_target": summary["rows_per_sec"] >= targets.min_rows_per_sec,
        "error_rate_target": error_rate(
            summary["api_errors"], summary["db_errors"], summary["api_requests"]
        ) < targets.max_error_rate,
    }
    checks["passed"] = all(checks.values())
    return checks


class SyncMetrics:
    """Counters for one sync run, with derived rates and ETA."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.start_time = clock()
        self.pages_fetched = 0
        self.empty_pages = 0
        self.failed_pages = 0
        self.rows_processed = 0
        self.rows_valid = 0
        self.rows_rejected = 0
        self.rows_upserted = 0
        self.rows_failed = 0
        self.api_requests = 0
        self.api_errors = 0
        self.db_writes = 0
        self.db_errors = 0
        self.rejections: Dict[str, int] = defaultdict(int)
        self.last_report_time = self.start_time
        self.last_report_rows = 0

    def record_rejection(self, reason: str) -> None:
        self.rows_rejected += 1
        self.rejections[reason] += 1

    def elapsed(self) -> float:
        return self._clock() - self.start_time

    def pages_per_sec(self) -> float:
        return per_second(self.pages_fetched, self.elapsed())

    def rows_per_sec(self) -> float:
        return per_second(self.rows_processed, self.elapsed())

    def eta(self, current_page: int, estimated_total_pages: int) -> float:
        return eta_seconds(current_page, self.pages_per_sec(), estimated_total_pages)

    def report(self, current_page: int) -> None:
        """Log a progress line."""
        now = self._clock()
        recent_elapsed = now - self.last_report_time
        recent_rows = self.rows_processed - self.last_report_rows
        recent_rate = recent_rows / recent_elapsed if recent_elapsed > 0 else 0

        logger.info(
            f"Progress: page {current_page} | {self.rows_processed} rows | "
            f"{self.pages_per_sec():.1f} p/s | {self.rows_per_sec():.0f} r/s "
            f"(recent: {recent_rate:.0f} r/s) | "
            f"Upserted: {self.rows_upserted} | Rejected: {self.rows_rejected} | "
            f"Errors: {self.api_errors} API / {self.db_errors} DB"
        )

        self.last_report_time = now
        self.last_report_rows = self.rows_processed

    def get_summary(self, elapsed_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Get summary statistics."""
        elapsed = self.elapsed() if elapsed_seconds is None else elapsed_seconds
        return {
            "elapsed_seconds": round(elapsed, 3),
            "total_minutes": round(elapsed / 60, 2),
            "pages_fetched": self.pages_fetched,
            "empty_pages": self.empty_pages,
            "failed_pages": self.failed_pages,
            "rows_processed": self.rows_processed,
            "rows_valid": self.rows_valid,
            "rows_rejected": self.rows_rejected,
            "rows_upserted": self.rows_upserted,
            "rows_failed": self.rows_failed,
            "rejections": dict(self.rejections),
            "api_requests": self.api_requests,
            "api_errors": self.api_errors,
            "db_writes": self.db_writes,
            "db_errors": self.db_errors,
            "pages_per_sec": round(per_second(self.pages_fetched, elapsed), 2),
            "rows_per_sec": round(per_second(self.rows_processed, elapsed), 2),
        }
