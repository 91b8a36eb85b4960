"""Custom exceptions for the candlestick aggregation engine.

Decoder, storage and sink exceptions live here to avoid circular imports
between the ingestion, aggregation and storage layers.
"""


class CandlesError(Exception):
    """Base exception for all engine errors."""


class MalformedTradeError(CandlesError):
    """Raised when a raw trade record cannot be decoded into a Trade.

    ``reason`` is a short machine-friendly tag (e.g. ``missing_field``),
    ``field`` names the offending input field when there is one.
    """

    def __init__(self, reason: str, field: str | None = None, detail: str = "") -> None:
        self.reason = reason
        self.field = field
        self.detail = detail
        message = reason if field is None else f"{reason}: {field}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class StorageError(CandlesError):
    """Base class for failures reported by a storage backend."""


class TransientStorageError(StorageError):
    """Storage failure that may succeed on retry (lock contention, I/O hiccup)."""


class PermanentStorageError(StorageError):
    """Storage failure that will fail again on retry (schema or constraint violation)."""


class WriteTimeoutError(TransientStorageError):
    """Raised when a storage write exceeds the configured deadline."""
