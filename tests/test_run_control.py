"""Tests for run control and progress tracking."""
import time

from carsync.jobs.progress import PageWatermark
from carsync.jobs.run_control import RunControl


def test_stops_after_max_pages():
    """The loop ends past max_pages."""
    control = RunControl(max_pages=10)
    assert control.should_stop(10) == (False, None)

    should_stop, reason = control.should_stop(11)
    assert should_stop
    assert "max_pages" in reason


def test_stops_after_consecutive_empty_pages():
    """N empty pages in a row end the loop; a full page resets the streak."""
    control = RunControl(max_consecutive_empty=2)
    control.record_empty_page()
    control.record_page()
    control.record_empty_page()
    assert not control.should_stop(4)[0]

    control.record_empty_page()
    should_stop, reason = control.should_stop(5)
    assert should_stop
    assert "empty" in reason


def test_time_budget():
    """An exhausted time budget stops the loop."""
    control = RunControl(stop_after_minutes=1, start_time=time.time() - 61)
    assert control.time_budget_exhausted()
    assert control.should_stop(1)[0]

    assert not RunControl().time_budget_exhausted()


def test_error_ceiling_is_strictly_greater():
    """The ceiling trips once errors exceed the maximum."""
    control = RunControl(max_api_errors=20)
    assert not control.error_ceiling_exceeded(20)
    assert control.error_ceiling_exceeded(21)


def test_watermark_advances_only_when_contiguous():
    """Out-of-order completions move the watermark only over a complete prefix."""
    watermark = PageWatermark()

    assert watermark.mark_done(2) is False
    assert watermark.mark_done(3) is False
    assert watermark.watermark == 0
    assert watermark.pending == 2

    assert watermark.mark_done(1) is True
    assert watermark.watermark == 3
    assert watermark.pending == 0


def test_watermark_ignores_pages_already_covered():
    """Old pages never move the watermark backwards."""
    watermark = PageWatermark(last_done=5)
    assert watermark.mark_done(4) is False
    assert watermark.mark_done(6) is True
    assert watermark.watermark == 6
