"""Read-only query access to stored trades and candlesticks."""

from candles.query.service import QueryService, candle_to_dict, trade_to_dict

__all__ = ["QueryService", "candle_to_dict", "trade_to_dict"]
