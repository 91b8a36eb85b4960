"""In-memory CandleStorage for development, tests and replay tooling.

Process-local and not shared between instances. Mirrors the SQLite
backend's semantics, including the revision guard on candle upserts.
"""

from datetime import datetime

from candles.models import BucketKey, CandleSnapshot, IntervalType, Trade
from candles.storage.base import CandleStorage


class InMemoryCandleStorage(CandleStorage):
    """Dictionary-backed storage keyed like the durable tables."""

    def __init__(self) -> None:
        self._trades: dict[tuple[datetime, str], Trade] = {}
        self._candles: dict[BucketKey, CandleSnapshot] = {}
        self.candle_writes = 0

    async def upsert_trade(self, trade: Trade) -> bool:
        key = (trade.event_time, trade.id)
        if key in self._trades:
            return False
        self._trades[key] = trade
        return True

    async def upsert_candle(self, snapshot: CandleSnapshot) -> bool:
        current = self._candles.get(snapshot.key)
        if current is not None and current.revision >= snapshot.revision:
            return False
        self._candles[snapshot.key] = snapshot
        self.candle_writes += 1
        return True

    async def get_last_revision(self, key: BucketKey) -> int | None:
        snapshot = self._candles.get(key)
        return None if snapshot is None else snapshot.revision

    async def load_snapshot(self, key: BucketKey) -> CandleSnapshot | None:
        return self._candles.get(key)

    async def fetch_candles(
        self,
        account_id: str,
        interval_type: IntervalType,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandleSnapshot]:
        result = [
            c
            for key, c in self._candles.items()
            if key.account_id == account_id
            and key.interval_type == interval_type
            and (start is None or key.interval_start >= start)
            and (end is None or key.interval_start < end)
        ]
        return sorted(result, key=lambda c: c.interval_start)

    async def fetch_trades(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Trade]:
        result = [
            t
            for t in self._trades.values()
            if t.account_id == account_id
            and (start is None or t.event_time >= start)
            and (end is None or t.event_time < end)
        ]
        return sorted(result, key=lambda t: (t.event_time, t.id))

    async def purge_trades_before(self, cutoff: datetime) -> int:
        stale = [k for k in self._trades if k[0] < cutoff]
        for k in stale:
            del self._trades[k]
        return len(stale)

    async def purge_candles_before(self, cutoff: datetime) -> int:
        stale = [k for k in self._candles if k.interval_start < cutoff]
        for k in stale:
            del self._candles[k]
        return len(stale)
