"""Typed read/write access to stored OHLCV candles.

All SQL lives behind MarketDataStore. Prices and volumes are stored as TEXT
and restored as Decimal on read.
"""

from decimal import Decimal

from ingestor.data.database import MarketDataDatabase
from ingestor.logging import get_logger
from ingestor.models import OHLCVCandle

logger = get_logger(__name__)


class MarketDataStore:
    """Async SQLite store for OHLCV candles.

    Usage:
        async with MarketDataDatabase(path) as database:
            store = MarketDataStore(database)
            inserted = await store.insert_candles(candles)
    """

    def __init__(self, database: MarketDataDatabase) -> None:
        self._database = database

    async def insert_candles(self, candles: list[OHLCVCandle]) -> int:
        """Insert candles, ignoring ones already stored.

        Lookback windows overlap between fires, so duplicates are expected.
        Returns the number of newly inserted rows.
        """
        if not candles:
            return 0

        data = [
            (
                c.exchange,
                c.symbol,
                c.timeframe,
                c.timestamp_ms,
                str(c.open),
                str(c.high),
                str(c.low),
                str(c.close),
                str(c.volume),
            )
            for c in candles
        ]

        cursor = await self._database.db.executemany(
            "INSERT OR IGNORE INTO ohlcv_candles "
            "(exchange, symbol, timeframe, timestamp_ms, open, high, low, close, volume) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            data,
        )
        await self._database.db.commit()

        inserted = cursor.rowcount
        logger.debug(
            "inserted_ohlcv_candles",
            total=len(candles),
            inserted=inserted,
        )
        return inserted

    async def get_candles(
        self,
        exchange: str,
        symbol: str,
        timeframe: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> list[OHLCVCandle]:
        """Return candles for one series, oldest first, optionally bounded."""
        query = (
            "SELECT timestamp_ms, open, high, low, close, volume FROM ohlcv_candles "
            "WHERE exchange = ? AND symbol = ? AND timeframe = ?"
        )
        params: list = [exchange, symbol, timeframe]
        if start_ms is not None:
            query += " AND timestamp_ms >= ?"
            params.append(start_ms)
        if end_ms is not None:
            query += " AND timestamp_ms <= ?"
            params.append(end_ms)
        query += " ORDER BY timestamp_ms ASC"

        cursor = await self._database.db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            OHLCVCandle(
                exchange=exchange,
                symbol=symbol,
                timeframe=timeframe,
                timestamp_ms=row[0],
                open=Decimal(row[1]),
                high=Decimal(row[2]),
                low=Decimal(row[3]),
                close=Decimal(row[4]),
                volume=Decimal(row[5]),
            )
            for row in rows
        ]

    async def get_latest_timestamp(
        self, exchange: str, symbol: str, timeframe: str
    ) -> int | None:
        """Return the newest stored open time for one series, or None if empty."""
        cursor = await self._database.db.execute(
            "SELECT MAX(timestamp_ms) FROM ohlcv_candles "
            "WHERE exchange = ? AND symbol = ? AND timeframe = ?",
            (exchange, symbol, timeframe),
        )
        row = await cursor.fetchone()
        return row[0] if row is not None else None
