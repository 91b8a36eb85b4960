"""Read path over stored trades and candlesticks.

Returns whatever revision storage last committed; the sink's revision guard
ensures that is always the newest one written.
"""

from datetime import datetime

from candles.models import BucketKey, CandleSnapshot, IntervalType, Trade
from candles.storage.base import CandleStorage


class QueryService:
    """Thin read-only facade over CandleStorage."""

    def __init__(self, storage: CandleStorage) -> None:
        self._storage = storage

    async def get_candles(
        self,
        account_id: str,
        interval_type: IntervalType,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandleSnapshot]:
        if start is not None and end is not None and end <= start:
            return []
        return await self._storage.fetch_candles(account_id, interval_type, start, end)

    async def get_candle(self, key: BucketKey) -> CandleSnapshot | None:
        return await self._storage.load_snapshot(key)

    async def get_trades(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Trade]:
        if start is not None and end is not None and end <= start:
            return []
        return await self._storage.fetch_trades(account_id, start, end)


def candle_to_dict(candle: CandleSnapshot) -> dict:
    """JSON-ready candle. Decimals as strings to keep precision."""
    return {
        "account_id": candle.account_id,
        "interval_type": candle.interval_type.value,
        "interval_start": candle.interval_start.isoformat(),
        "open": str(candle.open),
        "high": str(candle.high),
        "low": str(candle.low),
        "close": str(candle.close),
        "volume": str(candle.volume),
        "trade_count": candle.trade_count,
        "revision": candle.revision,
    }


def trade_to_dict(trade: Trade) -> dict:
    return {
        "id": trade.id,
        "account_id": trade.account_id,
        "event_time": trade.event_time.isoformat(),
        "amount": str(trade.amount),
        "trx_amount": str(trade.trx_amount),
        "total_done": None if trade.total_done is None else str(trade.total_done),
        "trans_type": trade.trans_type,
    }
