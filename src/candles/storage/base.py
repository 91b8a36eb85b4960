"""Abstract storage interface for raw trades and candlesticks.

Aggregation and sink code depends only on this interface, keeping the
backend (SQLite, in-memory, or a time-series database) swappable.

Backends must:
- tolerate duplicate upserts without error;
- key trades by (event_time, id) and candles by
  (interval_start, interval_type, account_id);
- only overwrite a candle row with a strictly higher revision;
- raise TransientStorageError / PermanentStorageError for failures.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from candles.models import BucketKey, CandleSnapshot, IntervalType, Trade


class CandleStorage(ABC):
    """Abstract base class for durable trade and candle storage."""

    @abstractmethod
    async def upsert_trade(self, trade: Trade) -> bool:
        """Store a raw trade. Returns True if the row was new."""
        ...

    @abstractmethod
    async def upsert_candle(self, snapshot: CandleSnapshot) -> bool:
        """Store a candle if its revision is newer. Returns True if applied."""
        ...

    @abstractmethod
    async def get_last_revision(self, key: BucketKey) -> int | None:
        """Return the stored revision for a bucket, or None if absent."""
        ...

    @abstractmethod
    async def load_snapshot(self, key: BucketKey) -> CandleSnapshot | None:
        """Return the stored accumulator snapshot for a bucket, or None."""
        ...

    @abstractmethod
    async def fetch_candles(
        self,
        account_id: str,
        interval_type: IntervalType,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandleSnapshot]:
        """Return candles with start <= interval_start < end, oldest first."""
        ...

    @abstractmethod
    async def fetch_trades(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Trade]:
        """Return trades with start <= event_time < end, oldest first."""
        ...

    @abstractmethod
    async def purge_trades_before(self, cutoff: datetime) -> int:
        """Delete raw trades older than cutoff. Returns rows deleted."""
        ...

    @abstractmethod
    async def purge_candles_before(self, cutoff: datetime) -> int:
        """Delete candles starting before cutoff. Returns rows deleted."""
        ...
