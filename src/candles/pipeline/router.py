"""Shard routing and the multi-shard aggregation engine.

Trades are routed by a stable hash of account_id so every trade of an
account lands on the same shard. Shards share nothing but the storage
backend, so their state stores need no locking and one shard's storage
trouble never blocks another's watermark.
"""

import zlib
from datetime import datetime
from typing import Any

from candles.config import AggregationSettings, ShardSettings, SinkSettings
from candles.exceptions import MalformedTradeError
from candles.ingest.decoder import TradeDecoder
from candles.logging import get_logger
from candles.models import Trade
from candles.monitoring import PipelineMonitor
from candles.pipeline.shard import ShardWorker
from candles.sink.writer import SinkWriter
from candles.storage.base import CandleStorage

logger = get_logger(__name__)


def shard_for(account_id: str, shard_count: int) -> int:
    """Stable shard index for an account (crc32, independent of PYTHONHASHSEED)."""
    return zlib.crc32(account_id.encode("utf-8")) % shard_count


class ShardedEngine:
    """Decodes incoming records and routes trades to shard workers.

    Args:
        storage: Shared storage backend.
        aggregation: Aggregation settings applied to every shard.
        shards: Shard count and queue bound.
        sink: Retry policy for each shard's SinkWriter.
        monitor: Shared signal collaborator.

    Usage:
        engine = ShardedEngine(storage, settings.aggregation, settings.shards, settings.sink)
        await engine.start()
        await engine.submit(raw_json_line)
        ...
        await engine.stop()
    """

    def __init__(
        self,
        storage: CandleStorage,
        aggregation: AggregationSettings,
        shards: ShardSettings,
        sink: SinkSettings,
        monitor: PipelineMonitor | None = None,
    ) -> None:
        if shards.count < 1:
            raise ValueError("shard count must be >= 1")
        self._monitor = monitor or PipelineMonitor()
        self._decoder = TradeDecoder()
        self._workers = [
            ShardWorker(
                shard_id=i,
                settings=aggregation,
                sink=SinkWriter(storage, sink, self._monitor),
                monitor=self._monitor,
                queue_size=shards.queue_size,
            )
            for i in range(shards.count)
        ]

    @property
    def workers(self) -> list[ShardWorker]:
        return self._workers

    @property
    def monitor(self) -> PipelineMonitor:
        return self._monitor

    def worker_for(self, account_id: str) -> ShardWorker:
        return self._workers[shard_for(account_id, len(self._workers))]

    async def start(self) -> None:
        for worker in self._workers:
            await worker.start()
        logger.info("engine_started", shards=len(self._workers))

    async def stop(self) -> None:
        """Process everything already queued, then stop and flush each shard."""
        for worker in self._workers:
            await worker.join()
        for worker in self._workers:
            await worker.stop()
        logger.info("engine_stopped", **self._decoder_stats())

    async def submit(self, raw: bytes | str | dict[str, Any]) -> Trade | None:
        """Decode a raw record and enqueue it on its shard.

        Returns None (after signalling the monitor) for malformed records.
        """
        try:
            trade = self._decoder.decode(raw)
        except MalformedTradeError as e:
            self._monitor.malformed(e)
            return None
        await self.worker_for(trade.account_id).submit(trade)
        return trade

    async def flush(self) -> None:
        for worker in self._workers:
            await worker.flush()

    def retention_horizon(self) -> datetime | None:
        """Lowest watermark across shards that have one; retention never passes it."""
        watermarks = [w.watermark for w in self._workers if w.watermark is not None]
        return min(watermarks, default=None)

    def stats(self) -> dict:
        return {
            **self._decoder_stats(),
            "signals": self._monitor.stats(),
            "shards": [w.stats() for w in self._workers],
        }

    def _decoder_stats(self) -> dict[str, int]:
        return {"decoded": self._decoder.decoded, "rejected": self._decoder.rejected}
