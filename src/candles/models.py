"""Shared data models for the candlestick aggregation engine.

CRITICAL: All monetary values use Decimal. Never use float for prices or volumes.
All datetimes are timezone-aware UTC; naive datetimes never leave the decoder.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Accepted event-time window; leaves headroom for lateness, grace and
# retention arithmetic on either side of the datetime range
MIN_EVENT_TIME = datetime(1900, 1, 1, tzinfo=timezone.utc)
MAX_EVENT_TIME = datetime(9000, 1, 1, tzinfo=timezone.utc)


class IntervalType(str, Enum):
    """Candlestick interval, aligned to the Unix epoch."""

    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def duration(self) -> timedelta:
        return _INTERVAL_DURATIONS[self]


_INTERVAL_DURATIONS: dict[IntervalType, timedelta] = {
    IntervalType.M30: timedelta(minutes=30),
    IntervalType.H1: timedelta(hours=1),
    IntervalType.H4: timedelta(hours=4),
    IntervalType.D1: timedelta(days=1),
}

DEFAULT_INTERVALS: tuple[IntervalType, ...] = tuple(IntervalType)


class BucketState(str, Enum):
    """Finalization state of a bucket accumulator."""

    OPEN = "open"  # accepting updates, not yet eligible for emission
    CLOSING = "closing"  # watermark passed the bucket end, awaiting emission
    CLOSED = "closed"  # emitted at least once


@dataclass(frozen=True)
class Trade:
    """A validated trade execution. Immutable once decoded."""

    id: str
    account_id: str
    amount: Decimal  # price proxy, > 0
    trx_amount: Decimal  # volume contribution, >= 0
    event_time: datetime
    trans_type: str = "unknown"
    total_done: Decimal | None = None


@dataclass(frozen=True, order=True)
class BucketKey:
    """Identifies one candlestick: (account, interval type, interval start)."""

    account_id: str
    interval_type: IntervalType
    interval_start: datetime

    @property
    def interval_end(self) -> datetime:
        return self.interval_start + self.interval_type.duration


@dataclass(frozen=True)
class CandleSnapshot:
    """Immutable copy of an accumulator, as emitted to and stored by the sink.

    ``trade_ids`` carries the contributing trade ids so that a bucket reloaded
    from storage can still recognise redelivered trades.
    """

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
    revision: int
    trade_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def account_id(self) -> str:
        return self.key.account_id

    @property
    def interval_type(self) -> IntervalType:
        return self.key.interval_type

    @property
    def interval_start(self) -> datetime:
        return self.key.interval_start


class LateReason(str, Enum):
    """Why a trade was excluded from a bucket's aggregate."""

    GRACE_EXPIRED = "grace_expired"
    RETENTION_EXPIRED = "retention_expired"
    RELOAD_FAILED = "reload_failed"  # evicted bucket could not be read back


@dataclass(frozen=True)
class LateTrade:
    """Late-dropped-from-aggregate signal for reconciliation.

    The trade itself is still written to the raw trade store.
    """

    trade: Trade
    interval_types: tuple[IntervalType, ...]
    watermark: datetime | None  # None when the partition has no watermark yet
    reason: LateReason
