"""Idempotent storage sink for trades and candlesticks."""

from candles.sink.writer import SinkWriter, WriteOutcome

__all__ = ["SinkWriter", "WriteOutcome"]
