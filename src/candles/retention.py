"""Periodic retention purge against the storage interface.

Raw trades older than AGG_RETENTION_DAYS and (optionally) candles older than
RETENTION_CANDLE_RETENTION_DAYS are deleted on a fixed cadence.

Ages are measured from the event-time horizon: the lowest shard watermark,
capped by the wall clock. The finalizer refuses to correct buckets starting
before ``watermark - retention`` and every shard watermark is at or above
the horizon, so a range whose raw trades were purged is never reopened, even
while a backfill runs far behind the wall clock.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from candles.logging import get_logger
from candles.storage.base import CandleStorage

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetentionJob:
    """Runs storage purges in the background.

    Args:
        storage: Storage backend to purge.
        trade_retention: Age beyond which raw trades are deleted (None = keep).
        candle_retention: Age beyond which candles are deleted (None = keep).
        interval_seconds: Delay between purge runs.
        clock: Returns the current UTC time.
        horizon: Returns the event-time horizon (lowest shard watermark), or
            None while no shard has a watermark. Without it the wall clock alone
            is used.
    """

    def __init__(
        self,
        storage: CandleStorage,
        trade_retention: timedelta | None,
        candle_retention: timedelta | None = None,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = _utc_now,
        horizon: Callable[[], datetime | None] | None = None,
    ) -> None:
        self._storage = storage
        self._trade_retention = trade_retention
        self._candle_retention = candle_retention
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._horizon = horizon
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def enabled(self) -> bool:
        return self._trade_retention is not None or self._candle_retention is not None

    async def start(self) -> None:
        if not self.enabled:
            logger.info("retention_disabled")
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("retention_job_started", interval_seconds=self._interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> dict[str, int]:
        """Purge once. Returns deleted row counts per table."""
        result = {"trades": 0, "candles": 0}
        reference = self._reference_time()
        if reference is None:
            logger.info("retention_purge_skipped", reason="no_watermark")
            return result
        if self._trade_retention is not None:
            result["trades"] = await self._storage.purge_trades_before(
                reference - self._trade_retention
            )
        if self._candle_retention is not None:
            result["candles"] = await self._storage.purge_candles_before(
                reference - self._candle_retention
            )
        logger.info("retention_purge_complete", **result)
        return result

    def _reference_time(self) -> datetime | None:
        now = self._clock()
        if self._horizon is None:
            return now
        horizon = self._horizon()
        if horizon is None:
            return None
        return min(now, horizon)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("retention_purge_failed", exc_info=True)
            await asyncio.sleep(self._interval_seconds)
