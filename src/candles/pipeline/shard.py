"""Per-shard sequential worker.

Each shard owns a queue, a watermark, an aggregation state store and a
finalizer. Processing within a shard is strictly sequential:

    raw trade upsert -> admit (fold / reopen / late-drop) -> watermark
    -> drain closable buckets -> candle upserts -> evict

Storage writes are the only suspension points. A write that keeps failing
delays this shard's flushes but never rolls back its watermark or
accumulators, and never touches another shard.
"""

import asyncio
from datetime import datetime

import structlog

from candles.aggregation.finalizer import Admission, Finalizer
from candles.aggregation.state_store import AggregationStateStore
from candles.aggregation.watermark import WatermarkTracker
from candles.config import AggregationSettings
from candles.exceptions import StorageError
from candles.logging import get_logger
from candles.models import CandleSnapshot, Trade
from candles.monitoring import PipelineMonitor
from candles.sink.writer import SinkWriter, WriteOutcome

logger = get_logger(__name__)


class ShardWorker:
    """Folds one shard's trades into candlesticks and flushes them.

    Args:
        shard_id: Shard index; also the watermark partition.
        settings: Aggregation settings (intervals, lateness, grace, retention).
        sink: Sink writer dedicated to this shard.
        monitor: Pipeline signal collaborator.
        queue_size: Backpressure bound on pending trades.
    """

    def __init__(
        self,
        shard_id: int,
        settings: AggregationSettings,
        sink: SinkWriter,
        monitor: PipelineMonitor,
        queue_size: int = 10_000,
    ) -> None:
        self.shard_id = shard_id
        self._settings = settings
        self._sink = sink
        self._monitor = monitor
        self._watermarks = WatermarkTracker(settings.allowed_lateness)
        self._store = AggregationStateStore()
        self._finalizer = Finalizer(
            store=self._store,
            intervals=settings.intervals,
            grace_window=settings.grace_window,
            snapshot_loader=sink.load_snapshot,
            retention=settings.retention,
            retain_closed=settings.retain_closed_buckets,
            on_evict=sink.forget,
        )
        self._queue: asyncio.Queue[Trade] = asyncio.Queue(maxsize=queue_size)
        self._pending_trades: list[Trade] = []
        self._last_drained: datetime | None = None
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self.processed = 0

    @property
    def watermark(self) -> datetime | None:
        return self._watermarks.current(self.shard_id)

    @property
    def store(self) -> AggregationStateStore:
        return self._store

    @property
    def finalizer(self) -> Finalizer:
        return self._finalizer

    # ──────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("shard_already_running", shard=self.shard_id)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"shard-{self.shard_id}")
        logger.info("shard_started", shard=self.shard_id)

    async def stop(self) -> None:
        """Stop the loop and flush whatever can be flushed."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info(
            "shard_stopped",
            shard=self.shard_id,
            processed=self.processed,
            open_buckets=len(self._store),
            pending_emissions=self._finalizer.pending_emissions,
        )

    async def submit(self, trade: Trade) -> None:
        """Enqueue a trade; waits when the shard is saturated."""
        await self._queue.put(trade)

    async def join(self) -> None:
        """Wait until every submitted trade has been processed."""
        await self._queue.join()

    def reassign(self) -> None:
        """Reset watermark progress after the shard's partition was reassigned."""
        self._watermarks.reset(self.shard_id)
        self._last_drained = None

    async def _run_loop(self) -> None:
        structlog.contextvars.bind_contextvars(shard=self.shard_id)
        idle_timeout = self._settings.finalize_interval_seconds
        while self._running:
            try:
                trade = await asyncio.wait_for(self._queue.get(), timeout=idle_timeout)
            except TimeoutError:
                await self.flush()
                continue
            try:
                await self.process(trade)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Isolate the record; the shard keeps going
                logger.exception("shard_record_failed", trade_id=trade.id)
            finally:
                self._queue.task_done()

    # ──────────────────────────────────────────────
    # Processing
    # ──────────────────────────────────────────────

    async def process(self, trade: Trade) -> Admission:
        """Run one trade through the shard pipeline."""
        outcome = await self._sink.upsert_trade(trade)
        if outcome == WriteOutcome.RETRY_EXHAUSTED:
            self._pending_trades.append(trade)

        admission = await self._finalizer.admit(trade, self.watermark)
        for late in admission.late:
            self._monitor.late_dropped(late, shard=self.shard_id)

        watermark = self._watermarks.observe(trade.event_time, self.shard_id)
        self.processed += 1

        if watermark != self._last_drained or admission.reopened:
            await self.flush()
        return admission

    async def flush(self) -> None:
        """Retry pending trade rows, emit closable candles and evict expired buckets."""
        await self._retry_pending_trades()

        watermark = self.watermark
        for snapshot in self._finalizer.drain(watermark):
            outcome = await self._sink.upsert_candle(snapshot)
            if outcome == WriteOutcome.APPLIED:
                self._finalizer.mark_flushed(snapshot)
            elif outcome == WriteOutcome.NOOP:
                if await self._stored_row_covers(snapshot):
                    self._finalizer.mark_flushed(snapshot)
            elif outcome == WriteOutcome.REJECTED:
                self._finalizer.mark_failed(snapshot)
            else:
                # Storage is unhealthy; keep the rest CLOSING for the next cadence
                break

        evicted = self._finalizer.evict_expired(watermark)
        if evicted:
            logger.debug("buckets_evicted", shard=self.shard_id, count=evicted)
        self._last_drained = watermark

    async def _stored_row_covers(self, snapshot: CandleSnapshot) -> bool:
        """Check that a skipped emission is already reflected in storage.

        A stored row missing some of the snapshot's trades means the bucket
        was rebuilt without its history; the bucket is rebased above the
        stored revision and emitted again on the next flush.
        """
        key = snapshot.key
        try:
            stored = await self._sink.load_snapshot(key)
        except StorageError as e:
            logger.warning(
                "candle_noop_unverified",
                shard=self.shard_id,
                account_id=key.account_id,
                interval=key.interval_type.value,
                error=str(e),
            )
            return False

        if stored is not None and snapshot.trade_ids <= stored.trade_ids:
            return True

        if stored is not None:
            stored_revision = stored.revision
        else:
            stored_revision = self._sink.applied_revision(key) or 0
        self._finalizer.rebase(key, stored_revision)
        self._monitor.alert(
            "candle_revision_conflict",
            account_id=key.account_id,
            interval=key.interval_type.value,
            interval_start=key.interval_start.isoformat(),
            revision=snapshot.revision,
            stored_revision=stored_revision,
        )
        return False

    async def _retry_pending_trades(self) -> None:
        if not self._pending_trades:
            return
        pending, self._pending_trades = self._pending_trades, []
        for i, trade in enumerate(pending):
            outcome = await self._sink.upsert_trade(trade)
            if outcome == WriteOutcome.RETRY_EXHAUSTED:
                self._pending_trades = pending[i:] + self._pending_trades
                return

    def stats(self) -> dict:
        watermark = self.watermark
        return {
            "shard": self.shard_id,
            "processed": self.processed,
            "queue_depth": self._queue.qsize(),
            "buckets_in_memory": len(self._store),
            "pending_emissions": self._finalizer.pending_emissions,
            "pending_trade_writes": len(self._pending_trades),
            "reopened": self._finalizer.reopen_count,
            "evicted": self._finalizer.evicted_count,
            "watermark": None if watermark is None else watermark.isoformat(),
        }
