"""Tests for RetentionJob purge scheduling."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from candles.config import AggregationSettings, ShardSettings, SinkSettings
from candles.models import IntervalType, LateReason, Trade
from candles.pipeline.router import ShardedEngine
from candles.retention import RetentionJob
from candles.storage.memory import InMemoryCandleStorage

NOW = datetime(2024, 2, 1, tzinfo=timezone.utc)


def _trade(trade_id: str, days_ago: float) -> Trade:
    return Trade(
        id=trade_id,
        account_id="acc",
        amount=Decimal("1"),
        trx_amount=Decimal("1"),
        event_time=NOW - timedelta(days=days_ago),
    )


class TestRetentionJob:
    @pytest.mark.asyncio()
    async def test_run_once_purges_old_trades(self, storage: InMemoryCandleStorage) -> None:
        for i, days in enumerate((1, 10, 40)):
            await storage.upsert_trade(_trade(str(i), days))
        job = RetentionJob(storage, trade_retention=timedelta(days=30), clock=lambda: NOW)

        result = await job.run_once()

        assert result == {"trades": 1, "candles": 0}
        assert [t.id for t in await storage.fetch_trades("acc")] == ["1", "0"]

    @pytest.mark.asyncio()
    async def test_candle_purge_uses_own_horizon(self) -> None:
        storage = MagicMock()
        storage.purge_trades_before = AsyncMock(return_value=0)
        storage.purge_candles_before = AsyncMock(return_value=4)
        job = RetentionJob(
            storage,
            trade_retention=None,
            candle_retention=timedelta(days=365),
            clock=lambda: NOW,
        )

        result = await job.run_once()

        assert result == {"trades": 0, "candles": 4}
        storage.purge_trades_before.assert_not_awaited()
        storage.purge_candles_before.assert_awaited_once_with(NOW - timedelta(days=365))

    @pytest.mark.asyncio()
    async def test_disabled_job_does_not_start(self, storage: InMemoryCandleStorage) -> None:
        job = RetentionJob(storage, trade_retention=None)

        await job.start()

        assert job.enabled is False
        assert job._task is None

    @pytest.mark.asyncio()
    async def test_loop_survives_purge_failure(self) -> None:
        storage = MagicMock()
        storage.purge_trades_before = AsyncMock(side_effect=[RuntimeError("boom"), 2, 2, 2])
        job = RetentionJob(
            storage, trade_retention=timedelta(days=1), interval_seconds=0.01, clock=lambda: NOW
        )

        await job.start()
        for _ in range(100):
            if storage.purge_trades_before.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await job.stop()

        assert storage.purge_trades_before.await_count >= 2


class TestRetentionHorizon:
    """Purge cutoffs follow the event-time horizon, not just the wall clock."""

    @pytest.mark.asyncio()
    async def test_lagging_watermark_holds_back_purge(
        self, storage: InMemoryCandleStorage
    ) -> None:
        # Backfill: the pipeline is 20 days behind the wall clock
        for i, days in enumerate((25, 45, 60)):
            await storage.upsert_trade(_trade(str(i), days))
        job = RetentionJob(
            storage,
            trade_retention=timedelta(days=30),
            clock=lambda: NOW,
            horizon=lambda: NOW - timedelta(days=20),
        )

        result = await job.run_once()

        # Cutoff is NOW - 50 days; wall clock alone would have purged two
        assert result == {"trades": 1, "candles": 0}
        assert [t.id for t in await storage.fetch_trades("acc")] == ["1", "0"]

    @pytest.mark.asyncio()
    async def test_no_watermark_skips_purge(self) -> None:
        storage = MagicMock()
        storage.purge_trades_before = AsyncMock(return_value=0)
        storage.purge_candles_before = AsyncMock(return_value=0)
        job = RetentionJob(
            storage,
            trade_retention=timedelta(days=1),
            candle_retention=timedelta(days=30),
            clock=lambda: NOW,
            horizon=lambda: None,
        )

        assert await job.run_once() == {"trades": 0, "candles": 0}
        storage.purge_trades_before.assert_not_awaited()
        storage.purge_candles_before.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_future_watermark_capped_by_clock(self) -> None:
        storage = MagicMock()
        storage.purge_trades_before = AsyncMock(return_value=0)
        job = RetentionJob(
            storage,
            trade_retention=timedelta(days=7),
            clock=lambda: NOW,
            horizon=lambda: NOW + timedelta(days=3),
        )

        await job.run_once()

        storage.purge_trades_before.assert_awaited_once_with(NOW - timedelta(days=7))

    @pytest.mark.asyncio()
    async def test_purged_range_is_never_reopened(
        self,
        storage: InMemoryCandleStorage,
        shard_settings: ShardSettings,
        sink_settings: SinkSettings,
    ) -> None:
        settings = AggregationSettings(
            intervals=[IntervalType.M30],
            allowed_lateness_seconds=60,
            grace_window_seconds=3600,
            retention_days=1,
        )
        engine = ShardedEngine(storage, settings, shard_settings, sink_settings)
        job = RetentionJob(
            storage,
            trade_retention=settings.retention,
            clock=lambda: NOW + timedelta(days=365),
            horizon=engine.retention_horizon,
        )
        start = NOW - timedelta(days=10)
        worker = engine.worker_for("acc")

        for hours in (0, 20, 30, 50):
            trade = Trade(
                id=f"t{hours}",
                account_id="acc",
                amount=Decimal("1"),
                trx_amount=Decimal("1"),
                event_time=start + timedelta(hours=hours),
            )
            await worker.process(trade)
        await job.run_once()
        kept = {t.id for t in await storage.fetch_trades("acc")}

        # Every bucket the finalizer would still correct keeps its raw trades
        horizon = worker.watermark - settings.retention
        assert kept == {"t30", "t50"}
        assert all(
            trade.event_time >= horizon for trade in await storage.fetch_trades("acc")
        )
        late = Trade(
            id="late",
            account_id="acc",
            amount=Decimal("1"),
            trx_amount=Decimal("1"),
            event_time=start + timedelta(hours=20),
        )
        admission = await worker.process(late)
        assert admission.late[0].reason == LateReason.RETENTION_EXPIRED
