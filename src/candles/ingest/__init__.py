"""Trade ingestion: decoding and validation of raw trade records."""

from candles.ingest.decoder import TradeDecoder, parse_timestamp

__all__ = ["TradeDecoder", "parse_timestamp"]
