"""Per-partition event-time watermark.

watermark = max observed event_time - allowed_lateness

The watermark never decreases: an out-of-order trade updates nothing because
it cannot raise the maximum. It is the only signal that closes buckets, which
keeps finalization deterministic and independent of wall-clock time.
"""

from datetime import datetime, timedelta

from candles.logging import get_logger

logger = get_logger(__name__)


class WatermarkTracker:
    """Tracks max event time and the derived watermark for each partition.

    Args:
        allowed_lateness: How far behind the newest event a trade may arrive
            and still be folded before its bucket closes.
    """

    def __init__(self, allowed_lateness: timedelta) -> None:
        if allowed_lateness < timedelta(0):
            raise ValueError("allowed_lateness must be non-negative")
        self._allowed_lateness = allowed_lateness
        self._max_event_time: dict[int, datetime] = {}

    @property
    def allowed_lateness(self) -> timedelta:
        return self._allowed_lateness

    def observe(self, event_time: datetime, partition: int = 0) -> datetime:
        """Record an event time and return the partition's current watermark."""
        current_max = self._max_event_time.get(partition)
        if current_max is None or event_time > current_max:
            self._max_event_time[partition] = event_time
            current_max = event_time
        return current_max - self._allowed_lateness

    def current(self, partition: int = 0) -> datetime | None:
        """Return the watermark, or None before anything has been observed."""
        current_max = self._max_event_time.get(partition)
        if current_max is None:
            return None
        return current_max - self._allowed_lateness

    def max_event_time(self, partition: int = 0) -> datetime | None:
        return self._max_event_time.get(partition)

    def reset(self, partition: int = 0) -> None:
        """Forget a partition's progress (partition reassignment)."""
        if self._max_event_time.pop(partition, None) is not None:
            logger.info("watermark_reset", partition=partition)
