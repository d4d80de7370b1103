"""ccxt-backed exchange client.

Wraps a ccxt.async_support exchange and sends every request through the
shared RateLimiter. ccxt's own throttle is switched off so that pacing is
decided in one place for the whole process.
"""

import asyncio
from datetime import datetime
from decimal import Decimal

import ccxt.async_support as ccxt_async

from ingestor.exceptions import UnsupportedExchangeError
from ingestor.exchange.client import ExchangeClient
from ingestor.logging import get_logger
from ingestor.models import OHLCVCandle, Timeframe
from ingestor.rate_limiter import RateLimiter

logger = get_logger(__name__)


def _to_decimal(value: object) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class CcxtExchangeClient(ExchangeClient):
    """Market data client for any exchange ccxt supports.

    Args:
        exchange_id: ccxt exchange id (e.g. "kraken").
        rate_limiter: The process-wide RateLimiter.
        page_limit: Maximum candles requested per OHLCV call.
        exchange: Pre-built ccxt exchange instance (tests); built from
            ``exchange_id`` when omitted.
    """

    def __init__(
        self,
        exchange_id: str,
        rate_limiter: RateLimiter,
        page_limit: int = 720,
        exchange: ccxt_async.Exchange | None = None,
    ) -> None:
        self._exchange_id = exchange_id.lower()
        self._rate_limiter = rate_limiter
        self._page_limit = page_limit

        if exchange is None:
            if self._exchange_id not in ccxt_async.exchanges:
                raise UnsupportedExchangeError(f"Unsupported exchange: {exchange_id}")
            exchange_class = getattr(ccxt_async, self._exchange_id)
            exchange = exchange_class({"enableRateLimit": False})
        self._exchange = exchange

    @property
    def name(self) -> str:
        return self._exchange_id

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def connect(self, cancel_event: asyncio.Event | None = None) -> None:
        """Load markets through the rate limiter."""
        logger.info("connecting_to_exchange", exchange=self._exchange_id)
        markets = await self._rate_limiter.execute(
            lambda: self._exchange.load_markets(),
            operation_name=f"load_markets:{self._exchange_id}",
            cancel_event=cancel_event,
        )
        logger.info(
            "exchange_connected",
            exchange=self._exchange_id,
            market_count=len(markets),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. Must be called to avoid leaking sessions."""
        await self._exchange.close()
        logger.info("exchange_connection_closed", exchange=self._exchange_id)

    async def fetch_ohlcv(
        self,
        symbol: str,
        timeframe: str,
        start_time: datetime,
        end_time: datetime,
        cancel_event: asyncio.Event | None = None,
    ) -> list[OHLCVCandle]:
        """Page forward from start_time until end_time is covered.

        A page shorter than the page limit, an empty page, or a page reaching
        end_time ends the walk. Only candles that opened at or after
        start_time and closed by end_time are kept; the one still forming is
        left for a later fire, whose lookback overlaps this window. Overlapping
        pages are de-duplicated by open time.
        """
        tf = Timeframe.parse(timeframe)
        start_ms = int(start_time.timestamp() * 1000)
        end_ms = int(end_time.timestamp() * 1000)
        operation_name = f"fetch_ohlcv:{self._exchange_id}:{symbol}:{tf.value}"

        candles: dict[int, OHLCVCandle] = {}
        since = start_ms
        pages = 0

        while since <= end_ms:
            batch = await self._rate_limiter.execute(
                lambda since=since: self._exchange.fetch_ohlcv(
                    symbol, tf.value, since=since, limit=self._page_limit
                ),
                operation_name=operation_name,
                cancel_event=cancel_event,
            )
            pages += 1
            if not batch:
                break

            for row in batch:
                timestamp_ms = int(row[0])
                if start_ms <= timestamp_ms and timestamp_ms + tf.milliseconds <= end_ms:
                    candles[timestamp_ms] = OHLCVCandle(
                        exchange=self._exchange_id,
                        symbol=symbol,
                        timeframe=tf.value,
                        timestamp_ms=timestamp_ms,
                        open=_to_decimal(row[1]),
                        high=_to_decimal(row[2]),
                        low=_to_decimal(row[3]),
                        close=_to_decimal(row[4]),
                        volume=_to_decimal(row[5]),
                    )

            last_ms = max(int(row[0]) for row in batch)
            if len(batch) < self._page_limit or last_ms >= end_ms:
                break
            next_since = last_ms + tf.milliseconds
            if next_since <= since:
                break
            since = next_since

        logger.debug(
            "ohlcv_fetched",
            exchange=self._exchange_id,
            symbol=symbol,
            timeframe=tf.value,
            pages=pages,
            candles=len(candles),
        )
        return [candles[ts] for ts in sorted(candles)]
