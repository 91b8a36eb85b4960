"""Tests for WatermarkTracker."""

from datetime import datetime, timedelta, timezone

import pytest

from candles.aggregation.watermark import WatermarkTracker

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
LATENESS = timedelta(seconds=60)


class TestWatermarkTracker:
    def test_no_watermark_before_first_event(self) -> None:
        tracker = WatermarkTracker(LATENESS)
        assert tracker.current() is None
        assert tracker.max_event_time() is None

    def test_watermark_trails_max_event_time(self) -> None:
        tracker = WatermarkTracker(LATENESS)

        watermark = tracker.observe(T0 + timedelta(minutes=10))

        assert watermark == T0 + timedelta(minutes=9)
        assert tracker.current() == watermark

    def test_out_of_order_event_never_lowers_watermark(self) -> None:
        tracker = WatermarkTracker(LATENESS)
        tracker.observe(T0 + timedelta(minutes=10))

        watermark = tracker.observe(T0 + timedelta(minutes=2))

        assert watermark == T0 + timedelta(minutes=9)
        assert tracker.max_event_time() == T0 + timedelta(minutes=10)

    def test_partitions_are_independent(self) -> None:
        tracker = WatermarkTracker(LATENESS)
        tracker.observe(T0 + timedelta(hours=2), partition=0)
        tracker.observe(T0 + timedelta(minutes=5), partition=1)

        assert tracker.current(0) == T0 + timedelta(hours=2) - LATENESS
        assert tracker.current(1) == T0 + timedelta(minutes=4)

    def test_reset_forgets_partition(self) -> None:
        tracker = WatermarkTracker(LATENESS)
        tracker.observe(T0, partition=3)

        tracker.reset(3)

        assert tracker.current(3) is None

    def test_negative_lateness_rejected(self) -> None:
        with pytest.raises(ValueError):
            WatermarkTracker(timedelta(seconds=-1))
