"""Pipeline signals for monitoring, alerting and reconciliation.

Every record the engine does not fully process leaves a trace here:
malformed input, trades excluded from aggregates, write failures and retry
exhaustion. Nothing is discarded silently.

The default implementation counts and logs. Deployments that forward
signals to an external alerting system subclass PipelineMonitor and
override ``alert`` (and optionally the other hooks).
"""

from collections import Counter, deque

from candles.exceptions import MalformedTradeError
from candles.logging import get_logger
from candles.models import LateTrade

logger = get_logger(__name__)


class PipelineMonitor:
    """Counts pipeline signals and keeps recent late trades for audit.

    Args:
        recent_late_limit: Number of late-dropped trades retained for the
            reconciliation endpoint.
    """

    def __init__(self, recent_late_limit: int = 1000) -> None:
        self.counters: Counter[str] = Counter()
        self.recent_late: deque[LateTrade] = deque(maxlen=recent_late_limit)

    def malformed(self, error: MalformedTradeError, shard: int | None = None) -> None:
        self.counters["malformed"] += 1
        self.counters[f"malformed.{error.reason}"] += 1
        logger.warning(
            "malformed_trade_rejected",
            reason=error.reason,
            field=error.field,
            detail=error.detail,
            shard=shard,
        )

    def late_dropped(self, late: LateTrade, shard: int | None = None) -> None:
        self.counters["late_dropped"] += 1
        self.counters[f"late_dropped.{late.reason.value}"] += 1
        self.recent_late.append(late)
        logger.warning(
            "late_trade_excluded_from_aggregate",
            trade_id=late.trade.id,
            account_id=late.trade.account_id,
            event_time=late.trade.event_time.isoformat(),
            intervals=[i.value for i in late.interval_types],
            watermark=None if late.watermark is None else late.watermark.isoformat(),
            reason=late.reason.value,
            shard=shard,
        )

    def write_failed(self, target: str, key: str, error: Exception, permanent: bool) -> None:
        kind = "permanent" if permanent else "transient"
        self.counters[f"write_failed.{target}.{kind}"] += 1
        logger.error(
            "storage_write_failed",
            target=target,
            key=key,
            permanent=permanent,
            error=str(error),
        )

    def alert(self, event: str, **context: object) -> None:
        """Escalate a condition that needs operator attention."""
        self.counters[f"alert.{event}"] += 1
        logger.critical(event, **context)

    def stats(self) -> dict[str, int]:
        return dict(self.counters)
