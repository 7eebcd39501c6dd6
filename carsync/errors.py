"""Exceptions raised by the sync pipeline."""
from typing import Optional


class ApiError(RuntimeError):
    """Listings API returned a non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApiRateLimitError(ApiError):
    """Listings API answered 429 Too Many Requests."""

    def __init__(self, message: str = "429 Too Many Requests"):
        super().__init__(message, status_code=429)


class SyncError(RuntimeError):
    """Fatal pipeline failure, tagged with the phase it happened in."""

    def __init__(self, phase: str, message: str):
        super().__init__(f"[{phase}] {message}")
        self.phase = phase
        self.message = message
