"""In-memory aggregation state for one shard.

Maps BucketKey -> OHLCAccumulator. Every shard owns its own store and
processes trades sequentially, so no locking is needed here.

Memory is bounded by watermark progress rather than by size: the Finalizer
evicts accumulators once they are flushed (or once their grace window has
expired). Two min-heaps keep the watermark scans proportional to the number
of buckets that actually became due.
"""

import heapq
from collections.abc import Iterator
from datetime import datetime, timedelta

from candles.aggregation.accumulator import OHLCAccumulator
from candles.logging import get_logger
from candles.models import BucketKey, BucketState, CandleSnapshot, Trade

logger = get_logger(__name__)


class AggregationStateStore:
    """Owns the accumulators of one shard."""

    def __init__(self) -> None:
        self._accumulators: dict[BucketKey, OHLCAccumulator] = {}
        # (interval_end, key) for buckets that may need OPEN -> CLOSING
        self._deadlines: list[tuple[datetime, BucketKey]] = []
        # (interval_end, key) for every bucket ever stored; lazily pruned
        self._ends: list[tuple[datetime, BucketKey]] = []

    def __len__(self) -> int:
        return len(self._accumulators)

    def __contains__(self, key: BucketKey) -> bool:
        return key in self._accumulators

    def __iter__(self) -> Iterator[OHLCAccumulator]:
        return iter(list(self._accumulators.values()))

    def get(self, key: BucketKey) -> OHLCAccumulator | None:
        return self._accumulators.get(key)

    def fold(self, trade: Trade, key: BucketKey) -> OHLCAccumulator:
        """Fold a trade into the bucket, creating the accumulator if absent.

        A redelivered trade (same id already folded) leaves the accumulator
        untouched. Returns the live accumulator, not a copy.
        """
        accumulator = self._accumulators.get(key)
        if accumulator is None:
            accumulator = OHLCAccumulator.start(key, trade)
            self._insert(accumulator)
            return accumulator

        if not accumulator.fold(trade):
            logger.debug(
                "duplicate_trade_ignored",
                trade_id=trade.id,
                account_id=key.account_id,
                interval=key.interval_type.value,
            )
        return accumulator

    def restore(self, snapshot: CandleSnapshot) -> OHLCAccumulator:
        """Resurrect an evicted bucket from its stored snapshot (state CLOSED)."""
        accumulator = OHLCAccumulator.from_snapshot(snapshot)
        self._insert(accumulator)
        return accumulator

    def reopen(self, key: BucketKey) -> OHLCAccumulator:
        """Move a CLOSED bucket back to OPEN so it is finalized again."""
        accumulator = self._accumulators[key]
        accumulator.state = BucketState.OPEN
        heapq.heappush(self._deadlines, (key.interval_end, key))
        return accumulator

    def evict(self, key: BucketKey) -> OHLCAccumulator | None:
        return self._accumulators.pop(key, None)

    def pop_due(self, watermark: datetime) -> list[OHLCAccumulator]:
        """Return OPEN accumulators whose interval end is <= watermark.

        Each returned bucket's deadline is consumed; callers move them to CLOSING.
        """
        due: dict[BucketKey, OHLCAccumulator] = {}
        while self._deadlines and self._deadlines[0][0] <= watermark:
            _, key = heapq.heappop(self._deadlines)
            accumulator = self._accumulators.get(key)
            if accumulator is not None and accumulator.state == BucketState.OPEN:
                due[key] = accumulator
        return list(due.values())

    def expired(self, watermark: datetime, grace: timedelta) -> list[OHLCAccumulator]:
        """Return accumulators whose end + grace <= watermark.

        Expired entries stay in the store; their heap entries are dropped only
        once the accumulator itself is gone, so an unflushed bucket is reported
        again on the next scan.
        """
        result: dict[BucketKey, OHLCAccumulator] = {}
        while self._ends and self._ends[0][0] + grace <= watermark:
            _, key = heapq.heappop(self._ends)
            accumulator = self._accumulators.get(key)
            if accumulator is not None:
                result[key] = accumulator
        for key in result:
            heapq.heappush(self._ends, (key.interval_end, key))
        return list(result.values())

    def _insert(self, accumulator: OHLCAccumulator) -> None:
        key = accumulator.key
        self._accumulators[key] = accumulator
        heapq.heappush(self._ends, (key.interval_end, key))
        if accumulator.state == BucketState.OPEN:
            heapq.heappush(self._deadlines, (key.interval_end, key))
