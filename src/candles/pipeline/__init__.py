"""Sharded ingestion pipeline: routing, per-shard workers and the trade source."""

from candles.pipeline.router import ShardedEngine, shard_for
from candles.pipeline.shard import ShardWorker

__all__ = ["ShardWorker", "ShardedEngine", "shard_for"]
