"""Streaming OHLC aggregation: bucket resolution, accumulators, watermark, finalization."""

from candles.aggregation.accumulator import OHLCAccumulator, trade_order_key
from candles.aggregation.buckets import interval_start, resolve_bucket_key, resolve_bucket_keys
from candles.aggregation.finalizer import Admission, Finalizer
from candles.aggregation.state_store import AggregationStateStore
from candles.aggregation.watermark import WatermarkTracker

__all__ = [
    "Admission",
    "AggregationStateStore",
    "Finalizer",
    "OHLCAccumulator",
    "WatermarkTracker",
    "interval_start",
    "resolve_bucket_key",
    "resolve_bucket_keys",
    "trade_order_key",
]
