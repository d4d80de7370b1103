"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CadenceDefinition(BaseModel):
    """Firing period and lookback window for one timeframe bucket."""

    model_config = ConfigDict(frozen=True)

    interval_minutes: int = Field(ge=1)
    lookback_minutes: int = Field(ge=1)
    enabled: bool = True


class RateLimiterSettings(BaseSettings):
    """Pacing and retry policy for every outbound exchange call."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", frozen=True)

    max_retries: int = Field(default=5, ge=1)
    rate_limit_delay_ms: int = 10_000  # first backoff after a rate-limit error
    max_delay_ms: int = 300_000  # cap for rate-limit backoff only
    base_delay_ms: int = 1_000  # first backoff after a transient error
    min_interval_between_calls_ms: int = 1_200


# timeframe -> ScheduleSettings field, in firing-frequency order
_CADENCE_FIELDS: dict[str, str] = {
    "1m": "one_minute",
    "5m": "five_minute",
    "15m": "fifteen_minute",
    "1h": "one_hour",
    "4h": "four_hour",
    "1d": "one_day",
}


# Each lookback overlaps the previous fire; 5m covers 20 periods.
_CADENCE_DEFAULTS: dict[str, CadenceDefinition] = {
    "one_minute": CadenceDefinition(interval_minutes=60, lookback_minutes=60),
    "five_minute": CadenceDefinition(interval_minutes=60, lookback_minutes=100),
    "fifteen_minute": CadenceDefinition(interval_minutes=60, lookback_minutes=60),
    "one_hour": CadenceDefinition(interval_minutes=60, lookback_minutes=120),
    "four_hour": CadenceDefinition(interval_minutes=240, lookback_minutes=480),
    "one_day": CadenceDefinition(interval_minutes=1440, lookback_minutes=2880),
}


class ScheduleSettings(BaseSettings):
    """Collection cadences, one per timeframe bucket.

    Loaded once at startup. Each lookback is sized to overlap the previous
    fire so a late or failed cycle does not leave a gap.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULE_",
        env_nested_delimiter="__",
    )

    one_minute: CadenceDefinition = _CADENCE_DEFAULTS["one_minute"]
    five_minute: CadenceDefinition = _CADENCE_DEFAULTS["five_minute"]
    fifteen_minute: CadenceDefinition = _CADENCE_DEFAULTS["fifteen_minute"]
    one_hour: CadenceDefinition = _CADENCE_DEFAULTS["one_hour"]
    four_hour: CadenceDefinition = _CADENCE_DEFAULTS["four_hour"]
    one_day: CadenceDefinition = _CADENCE_DEFAULTS["one_day"]

    idle_poll_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0

    @model_validator(mode="before")
    @classmethod
    def _merge_partial_cadences(cls, data: Any) -> Any:
        """Fill cadence keys missing from an override with that bucket's default.

        ``SCHEDULE_ONE_DAY__ENABLED=false`` arrives as ``{"enabled": "false"}``.
        """
        if not isinstance(data, dict):
            return data
        merged = dict(data)
        for field_name, default in _CADENCE_DEFAULTS.items():
            override = merged.get(field_name)
            if isinstance(override, dict):
                merged[field_name] = {**default.model_dump(), **override}
        return merged

    def cadences(self) -> dict[str, CadenceDefinition]:
        """Return every cadence keyed by timeframe (e.g. "1h"), enabled or not."""
        return {
            timeframe: getattr(self, field_name)
            for timeframe, field_name in _CADENCE_FIELDS.items()
        }


class CollectionSettings(BaseSettings):
    """What to collect and how hard to try per symbol."""

    model_config = SettingsConfigDict(env_prefix="COLLECTION_")

    symbols: list[str] = [
        "BTC/USDT",
        "ETH/USDT",
        "SOL/USDT",
        "ADA/USDT",
        "AVAX/USDT",
        "DOT/USDT",
        "LINK/USDT",
        "ATOM/USDT",
        "ALGO/USDT",
        "XTZ/USDT",
    ]
    exchanges: list[str] = ["kraken"]  # ccxt exchange ids
    max_concurrent_collections: int = Field(default=1, ge=1)
    retry_attempts: int = Field(default=1, ge=1)
    retry_delay_seconds: float = 5.0
    ohlcv_page_limit: int = 720  # Kraken returns at most 720 candles per call


class StorageSettings(BaseSettings):
    """Candle database location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/market_data.db"


class ApiSettings(BaseSettings):
    """Status API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # "json" for one JSON object per line
    rate_limit: RateLimiterSettings = RateLimiterSettings()
    schedule: ScheduleSettings = ScheduleSettings()
    collection: CollectionSettings = CollectionSettings()
    storage: StorageSettings = StorageSettings()
    api: ApiSettings = ApiSettings()
