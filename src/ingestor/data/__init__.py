"""Candle persistence layer: SQLite connection management and typed store."""

from ingestor.data.database import MarketDataDatabase
from ingestor.data.store import MarketDataStore

__all__ = ["MarketDataDatabase", "MarketDataStore"]
