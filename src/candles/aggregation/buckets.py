"""Bucket key resolution -- epoch-aligned interval boundaries.

Boundaries depend only on the event time and the interval duration, never on
when a consumer started, so every shard and every restart derives the same
keys. Integer timedelta division keeps the arithmetic exact at microsecond
resolution.
"""

from collections.abc import Iterable
from datetime import datetime

from candles.models import EPOCH, BucketKey, IntervalType, Trade


def interval_start(event_time: datetime, interval: IntervalType) -> datetime:
    """Return the start of the interval containing event_time."""
    if event_time.tzinfo is None:
        raise ValueError("event_time must be timezone-aware")
    duration = interval.duration
    return EPOCH + ((event_time - EPOCH) // duration) * duration


def resolve_bucket_key(
    account_id: str, event_time: datetime, interval: IntervalType
) -> BucketKey:
    """Return the BucketKey with start <= event_time < start + duration."""
    return BucketKey(
        account_id=account_id,
        interval_type=interval,
        interval_start=interval_start(event_time, interval),
    )


def resolve_bucket_keys(trade: Trade, intervals: Iterable[IntervalType]) -> list[BucketKey]:
    """Resolve one BucketKey per configured interval for a trade."""
    return [resolve_bucket_key(trade.account_id, trade.event_time, i) for i in intervals]
