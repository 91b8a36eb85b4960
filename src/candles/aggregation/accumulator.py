"""Incremental OHLC accumulator for a single bucket.

open/close follow event-time order, not arrival order: a trade that arrives
late but happened earlier replaces ``open``. Equal event times are ordered by
trade id ascending so that any delivery permutation yields the same candle.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from candles.models import BucketKey, BucketState, CandleSnapshot, Trade


def trade_order_key(event_time: datetime, trade_id: str) -> tuple:
    """Deterministic total order over trades: event time, then id.

    All-digit ids compare numerically and sort before other ids.
    """
    if trade_id.isdigit():
        return (event_time, 0, int(trade_id), trade_id)
    return (event_time, 1, 0, trade_id)


@dataclass
class OHLCAccumulator:
    """Mutable OHLC state for one bucket. Owned by the AggregationStateStore."""

    key: BucketKey
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    trade_count: int
    first_seen_time: datetime
    last_seen_time: datetime
    open_trade_id: str
    close_trade_id: str
    revision: int = 1
    state: BucketState = BucketState.OPEN
    flushed_revision: int = 0
    trade_ids: set[str] = field(default_factory=set)

    @classmethod
    def start(cls, key: BucketKey, trade: Trade) -> "OHLCAccumulator":
        """Create an accumulator from the first trade of a bucket."""
        return cls(
            key=key,
            open=trade.amount,
            high=trade.amount,
            low=trade.amount,
            close=trade.amount,
            volume=trade.trx_amount,
            trade_count=1,
            first_seen_time=trade.event_time,
            last_seen_time=trade.event_time,
            open_trade_id=trade.id,
            close_trade_id=trade.id,
            trade_ids={trade.id},
        )

    @classmethod
    def from_snapshot(cls, snapshot: CandleSnapshot) -> "OHLCAccumulator":
        """Resurrect a CLOSED accumulator from its last flushed snapshot."""
        return cls(
            key=snapshot.key,
            open=snapshot.open,
            high=snapshot.high,
            low=snapshot.low,
            close=snapshot.close,
            volume=snapshot.volume,
            trade_count=snapshot.trade_count,
            first_seen_time=snapshot.first_seen_time,
            last_seen_time=snapshot.last_seen_time,
            open_trade_id=snapshot.open_trade_id,
            close_trade_id=snapshot.close_trade_id,
            revision=snapshot.revision,
            state=BucketState.CLOSED,
            flushed_revision=snapshot.revision,
            trade_ids=set(snapshot.trade_ids),
        )

    def contains(self, trade_id: str) -> bool:
        return trade_id in self.trade_ids

    def fold(self, trade: Trade) -> bool:
        """Apply a trade. Returns False (no mutation) if it was already folded."""
        if trade.id in self.trade_ids:
            return False

        rank = trade_order_key(trade.event_time, trade.id)
        if rank < trade_order_key(self.first_seen_time, self.open_trade_id):
            self.open = trade.amount
            self.first_seen_time = trade.event_time
            self.open_trade_id = trade.id
        if rank > trade_order_key(self.last_seen_time, self.close_trade_id):
            self.close = trade.amount
            self.last_seen_time = trade.event_time
            self.close_trade_id = trade.id

        self.high = max(self.high, trade.amount)
        self.low = min(self.low, trade.amount)
        self.volume += trade.trx_amount
        self.trade_count += 1
        self.trade_ids.add(trade.id)
        self.revision += 1
        return True

    @property
    def is_flushed(self) -> bool:
        return self.flushed_revision >= self.revision

    def snapshot(self) -> CandleSnapshot:
        return CandleSnapshot(
            key=self.key,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            trade_count=self.trade_count,
            first_seen_time=self.first_seen_time,
            last_seen_time=self.last_seen_time,
            open_trade_id=self.open_trade_id,
            close_trade_id=self.close_trade_id,
            revision=self.revision,
            trade_ids=frozenset(self.trade_ids),
        )
