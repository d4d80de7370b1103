"""Shared test fixtures for the market data ingestor."""

from contextlib import asynccontextmanager

import pytest

from ingestor.config import (
    CadenceDefinition,
    CollectionSettings,
    RateLimiterSettings,
    ScheduleSettings,
)

CADENCE_FIELDS = (
    "one_minute",
    "five_minute",
    "fifteen_minute",
    "one_hour",
    "four_hour",
    "one_day",
)


def _make_schedule(
    interval_minutes: int = 60,
    lookback_minutes: int = 60,
    disabled: tuple[str, ...] = (),
    **overrides: CadenceDefinition,
) -> ScheduleSettings:
    """Build a ScheduleSettings with every cadence set explicitly.

    ``disabled`` takes field names (e.g. "one_day"); ``overrides`` replaces
    individual cadences.
    """
    cadences = {
        field_name: CadenceDefinition(
            interval_minutes=interval_minutes,
            lookback_minutes=lookback_minutes,
            enabled=field_name not in disabled,
        )
        for field_name in CADENCE_FIELDS
    }
    cadences.update(overrides)
    return ScheduleSettings(
        **cadences,
        idle_poll_seconds=0.05,
        shutdown_grace_seconds=0.2,
    )


def _make_scope(collector):
    """Collector scope factory yielding the same collector every cycle."""

    @asynccontextmanager
    async def scope():
        yield collector

    return scope


@pytest.fixture
def make_schedule():
    return _make_schedule


@pytest.fixture
def make_scope():
    return _make_scope


@pytest.fixture
def rate_limiter_settings() -> RateLimiterSettings:
    """Small delays and no pacing floor so retry tests stay fast."""
    return RateLimiterSettings(
        max_retries=3,
        rate_limit_delay_ms=100,
        max_delay_ms=1000,
        base_delay_ms=50,
        min_interval_between_calls_ms=0,
    )


@pytest.fixture
def collection_settings() -> CollectionSettings:
    return CollectionSettings(
        symbols=["BTC/USDT", "ETH/USDT"],
        exchanges=["kraken"],
        max_concurrent_collections=1,
        retry_attempts=1,
        retry_delay_seconds=5,
    )
