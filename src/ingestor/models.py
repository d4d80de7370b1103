"""Shared data models for the market data ingestor.

Prices and volumes use Decimal. Never use float for candle values.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from ingestor.exceptions import UnsupportedTimeframeError


class Timeframe(str, Enum):
    """Candle timeframes collected by the scheduler (ccxt notation)."""

    ONE_MINUTE = "1m"
    FIVE_MINUTE = "5m"
    FIFTEEN_MINUTE = "15m"
    ONE_HOUR = "1h"
    FOUR_HOUR = "4h"
    ONE_DAY = "1d"

    @property
    def minutes(self) -> int:
        return _TIMEFRAME_MINUTES[self]

    @property
    def milliseconds(self) -> int:
        return self.minutes * 60_000

    @classmethod
    def parse(cls, value: str) -> "Timeframe":
        """Look up a timeframe by its ccxt string, case-insensitively."""
        try:
            return cls(value.lower())
        except ValueError:
            raise UnsupportedTimeframeError(f"Unsupported timeframe: {value}") from None


_TIMEFRAME_MINUTES = {
    Timeframe.ONE_MINUTE: 1,
    Timeframe.FIVE_MINUTE: 5,
    Timeframe.FIFTEEN_MINUTE: 15,
    Timeframe.ONE_HOUR: 60,
    Timeframe.FOUR_HOUR: 240,
    Timeframe.ONE_DAY: 1440,
}


@dataclass(frozen=True)
class CollectionCycle:
    """One scheduled collection request, built fresh on every timer fire."""

    cycle_id: str
    symbols: tuple[str, ...]
    exchanges: tuple[str, ...]
    timeframe: str
    start_time: datetime  # UTC
    end_time: datetime  # UTC


@dataclass
class OHLCVCandle:
    """A single OHLCV candle.

    Stored in SQLite as TEXT to preserve Decimal precision.
    """

    exchange: str
    symbol: str
    timeframe: str
    timestamp_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass
class CollectionResult:
    """Outcome counts for one collector call."""

    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    candles_stored: int = 0


@dataclass
class CadenceStats:
    """Running counters for one cadence, reported by the status API."""

    timeframe: str
    interval_minutes: int
    lookback_minutes: int
    fires: int = 0
    succeeded: int = 0
    failed: int = 0
    in_flight: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
