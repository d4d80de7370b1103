"""Tests for DataCollectionOrchestrator.

Exchange clients and the store are mocked; no network or database access.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ingestor.collector import DataCollectionOrchestrator
from ingestor.config import CollectionSettings
from ingestor.exceptions import OperationCancelled
from ingestor.models import OHLCVCandle

END = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
START = END - timedelta(hours=2)


def _candle(symbol: str = "BTC/USDT", exchange: str = "kraken", ts: int = 1_704_103_200_000) -> OHLCVCandle:
    return OHLCVCandle(
        exchange=exchange,
        symbol=symbol,
        timeframe="1h",
        timestamp_ms=ts,
        open=Decimal("42000"),
        high=Decimal("42500"),
        low=Decimal("41800"),
        close=Decimal("42300"),
        volume=Decimal("12.5"),
    )


def _client(name: str, candles: list[OHLCVCandle] | None = None) -> MagicMock:
    client = MagicMock()
    client.name = name
    client.fetch_ohlcv = AsyncMock(return_value=candles if candles is not None else [_candle(exchange=name)])
    return client


@pytest.fixture
def store() -> AsyncMock:
    store = AsyncMock()
    store.insert_candles = AsyncMock(side_effect=lambda candles: len(candles))
    return store


class TestFanOut:
    @pytest.mark.asyncio
    async def test_one_fetch_per_symbol_exchange_timeframe(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        kraken = _client("kraken")
        kucoin = _client("kucoin")
        orchestrator = DataCollectionOrchestrator(
            {"kraken": kraken, "kucoin": kucoin}, store, collection_settings
        )

        result = await orchestrator.collect_recent_data(
            ["BTC/USDT", "ETH/USDT"], ["kraken", "kucoin"], ["1h"], START, END
        )

        assert kraken.fetch_ohlcv.await_count == 2
        assert kucoin.fetch_ohlcv.await_count == 2
        kraken.fetch_ohlcv.assert_any_await("ETH/USDT", "1h", START, END, None)
        assert result.requested == 4
        assert result.succeeded == 4
        assert result.failed == 0
        assert result.candles_stored == 4

    @pytest.mark.asyncio
    async def test_exchange_names_are_case_insensitive(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        kraken = _client("kraken")
        orchestrator = DataCollectionOrchestrator({"kraken": kraken}, store, collection_settings)

        result = await orchestrator.collect_recent_data(["BTC/USDT"], ["Kraken"], ["1h"], START, END)

        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_unsupported_exchange_counts_as_failure(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        kraken = _client("kraken")
        orchestrator = DataCollectionOrchestrator({"kraken": kraken}, store, collection_settings)

        result = await orchestrator.collect_recent_data(
            ["BTC/USDT"], ["kraken", "kucoin"], ["1h"], START, END
        )

        assert result.requested == 2
        assert result.succeeded == 1
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_empty_fetch_is_success_with_nothing_stored(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        orchestrator = DataCollectionOrchestrator(
            {"kraken": _client("kraken", candles=[])}, store, collection_settings
        )

        result = await orchestrator.collect_recent_data(["BTC/USDT"], ["kraken"], ["1h"], START, END)

        assert result.succeeded == 1
        assert result.candles_stored == 0

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_semaphore(self, store: AsyncMock) -> None:
        active = 0
        peak = 0

        async def slow_fetch(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return []

        client = _client("kraken")
        client.fetch_ohlcv = AsyncMock(side_effect=slow_fetch)
        settings = CollectionSettings(
            symbols=["BTC/USDT"], exchanges=["kraken"], max_concurrent_collections=2
        )
        orchestrator = DataCollectionOrchestrator({"kraken": client}, store, settings)

        await orchestrator.collect_recent_data(
            ["A/USDT", "B/USDT", "C/USDT", "D/USDT", "E/USDT"], ["kraken"], ["1m"], START, END
        )

        assert client.fetch_ohlcv.await_count == 5
        assert peak == 2


class TestRetries:
    @pytest.mark.asyncio
    async def test_series_retried_with_linear_delay(self, store: AsyncMock) -> None:
        client = _client("kraken")
        client.fetch_ohlcv = AsyncMock(
            side_effect=[RuntimeError("bad gateway"), RuntimeError("bad gateway"), [_candle()]]
        )
        settings = CollectionSettings(retry_attempts=3, retry_delay_seconds=5)
        orchestrator = DataCollectionOrchestrator({"kraken": client}, store, settings)

        with patch("ingestor.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await orchestrator.collect_recent_data(
                ["BTC/USDT"], ["kraken"], ["1h"], START, END
            )

        assert client.fetch_ohlcv.await_count == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [5, 10]
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_failed_series_does_not_stop_others(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        async def fetch(symbol, *args, **kwargs):
            if symbol == "BTC/USDT":
                raise RuntimeError("invalid pair")
            return [_candle(symbol=symbol)]

        client = _client("kraken")
        client.fetch_ohlcv = AsyncMock(side_effect=fetch)
        orchestrator = DataCollectionOrchestrator({"kraken": client}, store, collection_settings)

        result = await orchestrator.collect_recent_data(
            ["BTC/USDT", "ETH/USDT"], ["kraken"], ["1h"], START, END
        )

        assert result.failed == 1
        assert result.succeeded == 1
        assert result.candles_stored == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_nothing_scheduled_when_already_cancelled(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        client = _client("kraken")
        orchestrator = DataCollectionOrchestrator({"kraken": client}, store, collection_settings)
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await orchestrator.collect_recent_data(
            ["BTC/USDT"], ["kraken"], ["1h"], START, END, cancel_event
        )

        assert result.requested == 0
        client.fetch_ohlcv.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancellation_during_fetch_propagates(
        self, store: AsyncMock, collection_settings: CollectionSettings
    ) -> None:
        client = _client("kraken")
        client.fetch_ohlcv = AsyncMock(side_effect=OperationCancelled("shutdown"))
        orchestrator = DataCollectionOrchestrator({"kraken": client}, store, collection_settings)

        with pytest.raises(OperationCancelled):
            await orchestrator.collect_recent_data(
                ["BTC/USDT"], ["kraken"], ["1h"], START, END, asyncio.Event()
            )
