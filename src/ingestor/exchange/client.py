"""Abstract exchange client interface.

The collector depends only on this interface, keeping ccxt details in the
concrete implementation. Implementations must route every outbound call
through the shared RateLimiter.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime

from ingestor.models import OHLCVCandle


class ExchangeClient(ABC):
    """Abstract base class for market data clients."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Exchange id as used in configuration (e.g. "kraken")."""
        ...

    @abstractmethod
    async def connect(self, cancel_event: asyncio.Event | None = None) -> None:
        """Initialize connection and load markets."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...

    @abstractmethod
    async def fetch_ohlcv(
        self,
        symbol: str,
        timeframe: str,
        start_time: datetime,
        end_time: datetime,
        cancel_event: asyncio.Event | None = None,
    ) -> list[OHLCVCandle]:
        """Fetch every closed candle within [start_time, end_time], oldest first.

        Pagination is handled here; callers get the whole window.
        """
        ...
