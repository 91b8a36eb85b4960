"""SQLite implementation of the CandleStorage interface.

All SQL is isolated behind this class. Times are stored as integer
microseconds since the Unix epoch; monetary values are stored as TEXT and
restored as Decimal on read.

Candle upserts carry a revision guard in SQL (``WHERE excluded.revision >
candles.revision``) so that even concurrent writers can never regress a row.
"""

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

import aiosqlite

from candles.exceptions import PermanentStorageError, TransientStorageError
from candles.logging import get_logger
from candles.models import EPOCH, BucketKey, CandleSnapshot, IntervalType, Trade
from candles.storage.base import CandleStorage
from candles.storage.database import CandleDatabase

logger = get_logger(__name__)

_ONE_MICROSECOND = timedelta(microseconds=1)

_CANDLE_COLUMNS = (
    "interval_start_us, interval_type, account_id, open, high, low, close, volume, "
    "trade_count, first_seen_us, last_seen_us, open_trade_id, close_trade_id, "
    "trade_ids, revision"
)


def to_micros(value: datetime) -> int:
    return (value - EPOCH) // _ONE_MICROSECOND


def from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map sqlite errors onto the storage error taxonomy."""
    try:
        yield
    except aiosqlite.OperationalError as e:
        # "database is locked", disk I/O errors: worth retrying
        raise TransientStorageError(str(e)) from e
    except aiosqlite.DatabaseError as e:
        raise PermanentStorageError(str(e)) from e


class SqliteCandleStorage(CandleStorage):
    """Async SQLite store for raw trades and candlesticks.

    Usage:
        async with CandleDatabase("data/candles.db") as database:
            storage = SqliteCandleStorage(database)
            await storage.upsert_trade(trade)
    """

    def __init__(self, database: CandleDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def upsert_trade(self, trade: Trade) -> bool:
        """Insert a trade keyed by (event_time, id); duplicates are ignored."""
        with _translate_errors():
            cursor = await self._database.db.execute(
                "INSERT OR IGNORE INTO trades "
                "(event_time_us, id, account_id, amount, trx_amount, total_done, trans_type) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    to_micros(trade.event_time),
                    trade.id,
                    trade.account_id,
                    str(trade.amount),
                    str(trade.trx_amount),
                    None if trade.total_done is None else str(trade.total_done),
                    trade.trans_type,
                ),
            )
            await self._database.db.commit()
        return cursor.rowcount == 1

    async def upsert_candle(self, snapshot: CandleSnapshot) -> bool:
        """Insert or overwrite a candle row when the incoming revision is newer."""
        with _translate_errors():
            cursor = await self._database.db.execute(
                f"INSERT INTO candles ({_CANDLE_COLUMNS}, updated_at_ms) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (interval_start_us, interval_type, account_id) DO UPDATE SET "
                "open = excluded.open, high = excluded.high, low = excluded.low, "
                "close = excluded.close, volume = excluded.volume, "
                "trade_count = excluded.trade_count, first_seen_us = excluded.first_seen_us, "
                "last_seen_us = excluded.last_seen_us, open_trade_id = excluded.open_trade_id, "
                "close_trade_id = excluded.close_trade_id, trade_ids = excluded.trade_ids, "
                "revision = excluded.revision, updated_at_ms = excluded.updated_at_ms "
                "WHERE excluded.revision > candles.revision",
                (
                    to_micros(snapshot.interval_start),
                    snapshot.interval_type.value,
                    snapshot.account_id,
                    str(snapshot.open),
                    str(snapshot.high),
                    str(snapshot.low),
                    str(snapshot.close),
                    str(snapshot.volume),
                    snapshot.trade_count,
                    to_micros(snapshot.first_seen_time),
                    to_micros(snapshot.last_seen_time),
                    snapshot.open_trade_id,
                    snapshot.close_trade_id,
                    json.dumps(sorted(snapshot.trade_ids)),
                    snapshot.revision,
                    int(time.time() * 1000),
                ),
            )
            await self._database.db.commit()

        applied = cursor.rowcount == 1
        logger.debug(
            "candle_upserted",
            account_id=snapshot.account_id,
            interval=snapshot.interval_type.value,
            revision=snapshot.revision,
            applied=applied,
        )
        return applied

    async def purge_trades_before(self, cutoff: datetime) -> int:
        with _translate_errors():
            cursor = await self._database.db.execute(
                "DELETE FROM trades WHERE event_time_us < ?", (to_micros(cutoff),)
            )
            await self._database.db.commit()
        return cursor.rowcount

    async def purge_candles_before(self, cutoff: datetime) -> int:
        with _translate_errors():
            cursor = await self._database.db.execute(
                "DELETE FROM candles WHERE interval_start_us < ?", (to_micros(cutoff),)
            )
            await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get_last_revision(self, key: BucketKey) -> int | None:
        with _translate_errors():
            cursor = await self._database.db.execute(
                "SELECT revision FROM candles "
                "WHERE interval_start_us = ? AND interval_type = ? AND account_id = ?",
                (to_micros(key.interval_start), key.interval_type.value, key.account_id),
            )
            row = await cursor.fetchone()
        return None if row is None else row[0]

    async def load_snapshot(self, key: BucketKey) -> CandleSnapshot | None:
        with _translate_errors():
            cursor = await self._database.db.execute(
                f"SELECT {_CANDLE_COLUMNS} FROM candles "
                "WHERE interval_start_us = ? AND interval_type = ? AND account_id = ?",
                (to_micros(key.interval_start), key.interval_type.value, key.account_id),
            )
            row = await cursor.fetchone()
        return None if row is None else self._row_to_snapshot(row)

    async def fetch_candles(
        self,
        account_id: str,
        interval_type: IntervalType,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CandleSnapshot]:
        conditions = ["account_id = ?", "interval_type = ?"]
        params: list = [account_id, interval_type.value]

        if start is not None:
            conditions.append("interval_start_us >= ?")
            params.append(to_micros(start))
        if end is not None:
            conditions.append("interval_start_us < ?")
            params.append(to_micros(end))

        where = " AND ".join(conditions)
        with _translate_errors():
            cursor = await self._database.db.execute(
                f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where} "
                f"ORDER BY interval_start_us ASC",
                params,
            )
            rows = await cursor.fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    async def fetch_trades(
        self,
        account_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Trade]:
        conditions = ["account_id = ?"]
        params: list = [account_id]

        if start is not None:
            conditions.append("event_time_us >= ?")
            params.append(to_micros(start))
        if end is not None:
            conditions.append("event_time_us < ?")
            params.append(to_micros(end))

        where = " AND ".join(conditions)
        with _translate_errors():
            cursor = await self._database.db.execute(
                f"SELECT event_time_us, id, account_id, amount, trx_amount, total_done, trans_type "
                f"FROM trades WHERE {where} ORDER BY event_time_us ASC, id ASC",
                params,
            )
            rows = await cursor.fetchall()
        return [
            Trade(
                id=row[1],
                account_id=row[2],
                amount=Decimal(row[3]),
                trx_amount=Decimal(row[4]),
                event_time=from_micros(row[0]),
                trans_type=row[6],
                total_done=None if row[5] is None else Decimal(row[5]),
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_snapshot(row: tuple) -> CandleSnapshot:
        return CandleSnapshot(
            key=BucketKey(
                account_id=row[2],
                interval_type=IntervalType(row[1]),
                interval_start=from_micros(row[0]),
            ),
            open=Decimal(row[3]),
            high=Decimal(row[4]),
            low=Decimal(row[5]),
            close=Decimal(row[6]),
            volume=Decimal(row[7]),
            trade_count=row[8],
            first_seen_time=from_micros(row[9]),
            last_seen_time=from_micros(row[10]),
            open_trade_id=row[11],
            close_trade_id=row[12],
            trade_ids=frozenset(json.loads(row[13])),
            revision=row[14],
        )
