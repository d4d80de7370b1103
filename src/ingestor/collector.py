"""Collector: turns one scheduled request into stored candles.

The scheduler only knows the Collector protocol. DataCollectionOrchestrator
is the concrete collector. It fans a request out into one unit of work per
symbol x exchange x timeframe, bounds how many run at once, retries each unit
a few times, and writes what it fetched to the store.
"""

import asyncio
import itertools
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Protocol

from ingestor.config import CollectionSettings
from ingestor.data.store import MarketDataStore
from ingestor.exceptions import OperationCancelled
from ingestor.exchange.client import ExchangeClient
from ingestor.logging import get_logger
from ingestor.models import CollectionResult
from ingestor.rate_limiter import cancellable_sleep

logger = get_logger(__name__)


class Collector(Protocol):
    """What the scheduler calls on every fire."""

    async def collect_recent_data(
        self,
        symbols: Sequence[str],
        exchanges: Sequence[str],
        timeframes: Sequence[str],
        start_time: datetime,
        end_time: datetime,
        cancel_event: asyncio.Event | None = None,
    ) -> CollectionResult: ...


class DataCollectionOrchestrator:
    """Collects and stores candles for every requested series.

    A failed series is logged and counted; it never fails the whole call.
    Only cancellation propagates.

    Args:
        clients: Exchange clients keyed by exchange id. All of them share the
            process-wide RateLimiter.
        store: Candle store for the current unit-of-work scope.
        settings: Concurrency and retry settings.
    """

    def __init__(
        self,
        clients: Mapping[str, ExchangeClient],
        store: MarketDataStore,
        settings: CollectionSettings,
    ) -> None:
        self._clients = {name.lower(): client for name, client in clients.items()}
        self._store = store
        self._settings = settings

    async def collect_recent_data(
        self,
        symbols: Sequence[str],
        exchanges: Sequence[str],
        timeframes: Sequence[str],
        start_time: datetime,
        end_time: datetime,
        cancel_event: asyncio.Event | None = None,
    ) -> CollectionResult:
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_collections)
        tasks = []

        for symbol, exchange, timeframe in itertools.product(symbols, exchanges, timeframes):
            if cancel_event is not None and cancel_event.is_set():
                break
            tasks.append(
                self._collect_with_semaphore(
                    semaphore, symbol, exchange, timeframe, start_time, end_time, cancel_event
                )
            )

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        result = CollectionResult(requested=len(tasks))
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is None:
                result.failed += 1
            else:
                result.succeeded += 1
                result.candles_stored += outcome

        logger.info(
            "collection_completed",
            timeframes=list(timeframes),
            requested=result.requested,
            succeeded=result.succeeded,
            failed=result.failed,
            candles_stored=result.candles_stored,
        )
        return result

    async def _collect_with_semaphore(
        self,
        semaphore: asyncio.Semaphore,
        symbol: str,
        exchange: str,
        timeframe: str,
        start_time: datetime,
        end_time: datetime,
        cancel_event: asyncio.Event | None,
    ) -> int | None:
        async with semaphore:
            return await self._collect_series(
                symbol, exchange, timeframe, start_time, end_time, cancel_event
            )

    async def _collect_series(
        self,
        symbol: str,
        exchange: str,
        timeframe: str,
        start_time: datetime,
        end_time: datetime,
        cancel_event: asyncio.Event | None,
    ) -> int | None:
        """Fetch and store one series. Returns rows inserted, or None on failure."""
        client = self._clients.get(exchange.lower())
        if client is None:
            logger.error(
                "series_collection_failed",
                symbol=symbol,
                exchange=exchange,
                timeframe=timeframe,
                error="unsupported_exchange",
            )
            return None

        attempts = self._settings.retry_attempts
        for attempt in range(1, attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled("Shutdown requested before series collection")
            try:
                logger.debug(
                    "collecting_series",
                    symbol=symbol,
                    exchange=exchange,
                    timeframe=timeframe,
                    attempt=attempt,
                )
                candles = await client.fetch_ohlcv(
                    symbol, timeframe, start_time, end_time, cancel_event
                )
                stored = await self._store.insert_candles(candles)
                if candles:
                    logger.debug(
                        "series_stored",
                        symbol=symbol,
                        exchange=exchange,
                        timeframe=timeframe,
                        fetched=len(candles),
                        stored=stored,
                    )
                else:
                    logger.debug(
                        "series_no_new_data",
                        symbol=symbol,
                        exchange=exchange,
                        timeframe=timeframe,
                    )
                return stored
            except OperationCancelled:
                raise
            except Exception as e:
                if attempt < attempts:
                    logger.warning(
                        "series_attempt_failed",
                        symbol=symbol,
                        exchange=exchange,
                        timeframe=timeframe,
                        attempt=attempt,
                        error=str(e),
                    )
                    await cancellable_sleep(
                        self._settings.retry_delay_seconds * attempt, cancel_event
                    )
                else:
                    logger.error(
                        "series_collection_failed",
                        symbol=symbol,
                        exchange=exchange,
                        timeframe=timeframe,
                        attempts=attempts,
                        exc_info=True,
                    )
        return None
