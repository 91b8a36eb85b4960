"""Bucket finalization state machine.

    OPEN ──(watermark >= end)──> CLOSING ──(flushed)──> CLOSED
      ^                                                  │
      └──────(late trade, watermark < end + grace)───────┘

Two tiers of lateness:
- allowed lateness: already subtracted inside the watermark, so trades up to
  that far behind are folded before the bucket ever closes;
- grace window: after close, a late trade reopens the bucket, which is then
  re-emitted with a higher revision and overwrites the stored row.

Beyond the grace window (or the raw-trade retention horizon) a trade is not
folded. It is reported as a LateTrade; the raw trade row is still written by
the shard.

A bucket that is not in memory is always looked up in storage first, so
corrections survive eviction and restarts without
long-lived memory.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from candles.aggregation.buckets import resolve_bucket_keys
from candles.aggregation.state_store import AggregationStateStore
from candles.exceptions import StorageError
from candles.logging import get_logger
from candles.models import (
    BucketKey,
    BucketState,
    CandleSnapshot,
    IntervalType,
    LateReason,
    LateTrade,
    Trade,
)

logger = get_logger(__name__)

SnapshotLoader = Callable[[BucketKey], Awaitable[CandleSnapshot | None]]


@dataclass
class Admission:
    """Outcome of admitting one trade across all configured intervals."""

    folded: list[BucketKey] = field(default_factory=list)
    reopened: list[BucketKey] = field(default_factory=list)
    duplicates: list[BucketKey] = field(default_factory=list)
    late: list[LateTrade] = field(default_factory=list)


class Finalizer:
    """Decides when buckets close, reopen, or reject late data.

    Args:
        store: The shard's aggregation state store.
        intervals: Interval types every trade is folded into.
        grace_window: Post-close correction window, measured against the watermark.
        snapshot_loader: Async callable returning the stored snapshot of an
            evicted bucket (or None).
        retention: Raw-trade retention. Buckets starting before
            ``watermark - retention`` are permanently closed.
        retain_closed: Keep flushed buckets in memory until their grace window
            expires instead of evicting them right after the flush.
        on_evict: Called with each evicted key.
    """

    def __init__(
        self,
        store: AggregationStateStore,
        intervals: list[IntervalType],
        grace_window: timedelta,
        snapshot_loader: SnapshotLoader,
        retention: timedelta | None = None,
        retain_closed: bool = False,
        on_evict: Callable[[BucketKey], None] | None = None,
    ) -> None:
        self._store = store
        self._intervals = list(intervals)
        self._grace_window = grace_window
        self._load_snapshot = snapshot_loader
        self._retention = retention
        self._retain_closed = retain_closed
        self._on_evict = on_evict
        self._closing: set[BucketKey] = set()
        self.reopen_count = 0
        self.evicted_count = 0

    @property
    def pending_emissions(self) -> int:
        return len(self._closing)

    # ──────────────────────────────────────────────
    # Admission
    # ──────────────────────────────────────────────

    async def admit(self, trade: Trade, watermark: datetime | None) -> Admission:
        """Fold a trade into every interval bucket it is still eligible for."""
        admission = Admission()
        dropped: dict[LateReason, list[IntervalType]] = {}

        for key in resolve_bucket_keys(trade, self._intervals):
            reason = await self._admit_one(trade, key, watermark, admission)
            if reason is not None:
                dropped.setdefault(reason, []).append(key.interval_type)

        for reason, interval_types in dropped.items():
            admission.late.append(
                LateTrade(
                    trade=trade,
                    interval_types=tuple(interval_types),
                    watermark=watermark,
                    reason=reason,
                )
            )
        return admission

    async def _admit_one(
        self,
        trade: Trade,
        key: BucketKey,
        watermark: datetime | None,
        admission: Admission,
    ) -> LateReason | None:
        if watermark is not None and self._retention_expired(key, watermark):
            return LateReason.RETENTION_EXPIRED

        accumulator = self._store.get(key)

        if accumulator is None:
            if self._grace_expired(key, watermark):
                return LateReason.GRACE_EXPIRED
            # Not in memory: evicted after close, written before a restart,
            # or owned by another worker before a reassignment
            try:
                snapshot = await self._load_snapshot(key)
            except StorageError as e:
                logger.error(
                    "bucket_reload_failed",
                    account_id=key.account_id,
                    interval=key.interval_type.value,
                    interval_start=key.interval_start.isoformat(),
                    error=str(e),
                )
                return LateReason.RELOAD_FAILED
            if snapshot is None:
                self._store.fold(trade, key)
                admission.folded.append(key)
                return None
            accumulator = self._store.restore(snapshot)

        if accumulator.contains(trade.id):
            admission.duplicates.append(key)
            if accumulator.state == BucketState.CLOSED and not self._retain_closed:
                self._evict(key)
            return None

        if accumulator.state != BucketState.CLOSED:
            self._store.fold(trade, key)
            admission.folded.append(key)
            return None

        if self._grace_expired(key, watermark):
            return LateReason.GRACE_EXPIRED

        self._store.reopen(key)
        accumulator = self._store.fold(trade, key)
        self.reopen_count += 1
        admission.reopened.append(key)
        logger.info(
            "bucket_reopened",
            account_id=key.account_id,
            interval=key.interval_type.value,
            interval_start=key.interval_start.isoformat(),
            trade_id=trade.id,
            revision=accumulator.revision,
        )
        return None

    def _retention_expired(self, key: BucketKey, watermark: datetime) -> bool:
        if self._retention is None:
            return False
        return key.interval_start < watermark - self._retention

    def _grace_expired(self, key: BucketKey, watermark: datetime | None) -> bool:
        # Unknown watermark (fresh partition): the bucket may still be corrected
        if watermark is None:
            return False
        return watermark >= key.interval_end + self._grace_window

    # ──────────────────────────────────────────────
    # Emission
    # ──────────────────────────────────────────────

    def drain(self, watermark: datetime | None) -> list[CandleSnapshot]:
        """Close due buckets and return every bucket awaiting emission."""
        if watermark is not None:
            for accumulator in self._store.pop_due(watermark):
                accumulator.state = BucketState.CLOSING
                self._closing.add(accumulator.key)

        snapshots: list[CandleSnapshot] = []
        for key in sorted(self._closing):
            accumulator = self._store.get(key)
            if accumulator is None:
                self._closing.discard(key)
                continue
            snapshots.append(accumulator.snapshot())
        return snapshots

    def mark_flushed(self, snapshot: CandleSnapshot) -> None:
        """CLOSING -> CLOSED once the current revision is durably written."""
        key = snapshot.key
        accumulator = self._store.get(key)
        if accumulator is None:
            return
        accumulator.flushed_revision = max(accumulator.flushed_revision, snapshot.revision)
        if accumulator.state != BucketState.CLOSING or not accumulator.is_flushed:
            return

        accumulator.state = BucketState.CLOSED
        self._closing.discard(key)
        if not self._retain_closed:
            self._evict(key)

    def rebase(self, key: BucketKey, stored_revision: int) -> None:
        """Lift a CLOSING bucket above a stored revision that lacks some of its trades.

        The bucket stays unflushed, so the next drain emits it again.
        """
        accumulator = self._store.get(key)
        if accumulator is None:
            return
        accumulator.revision = max(accumulator.revision, stored_revision + 1)
        logger.warning(
            "bucket_revision_rebased",
            account_id=key.account_id,
            interval=key.interval_type.value,
            interval_start=key.interval_start.isoformat(),
            stored_revision=stored_revision,
            revision=accumulator.revision,
        )

    def mark_failed(self, snapshot: CandleSnapshot) -> None:
        """Give up on a bucket whose write failed permanently."""
        self._closing.discard(snapshot.key)
        if self._store.get(snapshot.key) is not None:
            self._evict(snapshot.key)
        logger.error(
            "bucket_dropped_after_permanent_failure",
            account_id=snapshot.account_id,
            interval=snapshot.interval_type.value,
            interval_start=snapshot.interval_start.isoformat(),
            revision=snapshot.revision,
        )

    # ──────────────────────────────────────────────
    # Eviction
    # ──────────────────────────────────────────────

    def evict_expired(self, watermark: datetime | None) -> int:
        """Evict flushed buckets whose grace window has fully elapsed.

        Unflushed buckets are never evicted here; they stay until a flush
        succeeds or fails permanently.
        """
        if watermark is None:
            return 0
        evicted = 0
        for accumulator in self._store.expired(watermark, self._grace_window):
            if accumulator.state == BucketState.CLOSED and accumulator.is_flushed:
                self._evict(accumulator.key)
                evicted += 1
            else:
                logger.debug(
                    "expired_bucket_awaiting_flush",
                    account_id=accumulator.key.account_id,
                    interval=accumulator.key.interval_type.value,
                    state=accumulator.state.value,
                )
        return evicted

    def _evict(self, key: BucketKey) -> None:
        self._store.evict(key)
        self.evicted_count += 1
        if self._on_evict is not None:
            self._on_evict(key)
