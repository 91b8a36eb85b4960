"""Storage layer: abstract interface plus SQLite and in-memory backends."""

from candles.storage.base import CandleStorage
from candles.storage.database import CandleDatabase
from candles.storage.memory import InMemoryCandleStorage
from candles.storage.sqlite_store import SqliteCandleStorage

__all__ = [
    "CandleDatabase",
    "CandleStorage",
    "InMemoryCandleStorage",
    "SqliteCandleStorage",
]
