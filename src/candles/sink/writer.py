"""Idempotent sink for trades and candlesticks.

Wraps a CandleStorage with:
- a per-call deadline (asyncio.wait_for) so one slow write cannot stall a shard
  indefinitely;
- exponential backoff retry for transient failures, capped per delay;
- a revision guard: a candle is written only if its revision is newer than
  the last revision applied for that bucket. The guard is tracked locally and
  falls back to storage on a cache miss, so replays and reordered emissions
  from parallel workers are no-ops rather than regressions.

Retrying is always safe: trade rows are keyed by (event_time, id) and candle
rows are full snapshots keyed by bucket, so repeating a write reproduces the
same row.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from candles.config import SinkSettings
from candles.exceptions import (
    PermanentStorageError,
    StorageError,
    TransientStorageError,
    WriteTimeoutError,
)
from candles.logging import get_logger
from candles.models import BucketKey, CandleSnapshot, Trade
from candles.monitoring import PipelineMonitor
from candles.storage.base import CandleStorage

logger = get_logger(__name__)


class WriteOutcome(str, Enum):
    """Result of a sink write."""

    APPLIED = "applied"
    NOOP = "noop"  # duplicate trade or revision not newer than stored
    RETRY_EXHAUSTED = "retry_exhausted"  # transient failure, caller keeps state and retries later
    REJECTED = "rejected"  # permanent failure, record skipped


def _describe(key: BucketKey) -> str:
    return f"{key.account_id}/{key.interval_type.value}/{key.interval_start.isoformat()}"


class SinkWriter:
    """Performs bounded, retried, revision-guarded writes against storage.

    Args:
        storage: Storage backend.
        settings: Retry and timeout policy.
        monitor: Receives write failure and retry exhaustion signals.
    """

    def __init__(
        self,
        storage: CandleStorage,
        settings: SinkSettings,
        monitor: PipelineMonitor | None = None,
    ) -> None:
        self._storage = storage
        self._settings = settings
        self._monitor = monitor or PipelineMonitor()
        self._applied_revisions: dict[BucketKey, int] = {}
        self.trades_written = 0
        self.candles_written = 0

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def upsert_trade(self, trade: Trade) -> WriteOutcome:
        """Write a raw trade row. NOOP means the row already existed."""
        target = f"{trade.event_time.isoformat()}/{trade.id}"
        try:
            inserted = await self._with_retry(self._storage.upsert_trade, trade)
        except PermanentStorageError as e:
            self._monitor.write_failed("trade", target, e, permanent=True)
            return WriteOutcome.REJECTED
        except TransientStorageError as e:
            self._monitor.alert(
                "storage_retry_exhausted",
                target="trade",
                key=target,
                attempts=self._settings.max_retries,
                error=str(e),
            )
            return WriteOutcome.RETRY_EXHAUSTED

        if not inserted:
            return WriteOutcome.NOOP
        self.trades_written += 1
        return WriteOutcome.APPLIED

    async def upsert_candle(self, snapshot: CandleSnapshot) -> WriteOutcome:
        """Write a candle snapshot unless an equal or newer revision is applied."""
        key = snapshot.key
        target = _describe(key)
        try:
            last_revision = await self._last_revision(key)
            if last_revision is not None and last_revision >= snapshot.revision:
                logger.debug(
                    "candle_revision_not_newer",
                    key=target,
                    incoming=snapshot.revision,
                    applied=last_revision,
                )
                return WriteOutcome.NOOP

            applied = await self._with_retry(self._storage.upsert_candle, snapshot)
        except PermanentStorageError as e:
            self._monitor.write_failed("candle", target, e, permanent=True)
            return WriteOutcome.REJECTED
        except TransientStorageError as e:
            self._monitor.alert(
                "storage_retry_exhausted",
                target="candle",
                key=target,
                revision=snapshot.revision,
                attempts=self._settings.max_retries,
                error=str(e),
            )
            return WriteOutcome.RETRY_EXHAUSTED

        if not applied:
            # A concurrent writer got a newer revision in; re-read on next use
            self._applied_revisions.pop(key, None)
            return WriteOutcome.NOOP

        self._applied_revisions[key] = snapshot.revision
        self.candles_written += 1
        logger.debug(
            "candle_written",
            key=target,
            revision=snapshot.revision,
            open=str(snapshot.open),
            high=str(snapshot.high),
            low=str(snapshot.low),
            close=str(snapshot.close),
            volume=str(snapshot.volume),
        )
        return WriteOutcome.APPLIED

    async def load_snapshot(self, key: BucketKey) -> CandleSnapshot | None:
        """Read back a stored snapshot for reopen-after-eviction.

        Raises StorageError when the read cannot be completed.
        """
        snapshot = await self._with_retry(self._storage.load_snapshot, key)
        if snapshot is not None:
            current = self._applied_revisions.get(key, 0)
            self._applied_revisions[key] = max(current, snapshot.revision)
        return snapshot

    def forget(self, key: BucketKey) -> None:
        """Drop the local revision entry of an evicted bucket."""
        self._applied_revisions.pop(key, None)

    def applied_revision(self, key: BucketKey) -> int | None:
        return self._applied_revisions.get(key)

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    async def _last_revision(self, key: BucketKey) -> int | None:
        if key in self._applied_revisions:
            return self._applied_revisions[key]
        revision = await self._with_retry(self._storage.get_last_revision, key)
        if revision is not None:
            self._applied_revisions[key] = revision
        return revision

    async def _with_retry(self, op: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Execute a storage call with a deadline and exponential backoff retry.

        Delays: base, 2*base, 4*base ... capped at retry_max_delay.
        PermanentStorageError is raised immediately; the last transient error
        is re-raised once max_retries attempts are used up.
        """
        max_retries = max(1, self._settings.max_retries)
        timeout = self._settings.write_timeout_seconds

        for attempt in range(max_retries):
            try:
                return await asyncio.wait_for(op(*args), timeout=timeout)
            except PermanentStorageError:
                raise
            except TimeoutError:
                error: StorageError = WriteTimeoutError(f"storage call exceeded {timeout}s")
            except TransientStorageError as e:
                error = e

            if attempt == max_retries - 1:
                raise error

            delay = min(
                self._settings.retry_base_delay * (2**attempt),
                self._settings.retry_max_delay,
            )
            logger.warning(
                "storage_retry",
                operation=getattr(op, "__name__", "storage_call"),
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)

        raise AssertionError("unreachable")  # loop always returns or raises
