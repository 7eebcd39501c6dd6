"""Contiguous progress tracking for out-of-order page completion."""
from typing import Set


class PageWatermark:
    """Highest page number below which every page is done.

    Pages finish out of order when several run at once; a page only counts
    toward the watermark once all earlier pages are done too.
    """

    def __init__(self, last_done: int = 0):
        self.watermark = last_done
        self._done: Set[int] = set()

    def mark_done(self, page: int) -> bool:
        """Mark a page done. Returns True when the watermark moved."""
        if page <= self.watermark:
            return False
        self._done.add(page)
        advanced = False
        while self.watermark + 1 in self._done:
            self.watermark += 1
            self._done.discard(self.watermark)
            advanced = True
        return advanced

    @property
    def pending(self) -> int:
        """Pages done but still waiting for an earlier one."""
        return len(self._done)
