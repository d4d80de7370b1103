"""Exchange client layer -- market data via ccxt, paced by the shared RateLimiter."""

from ingestor.exchange.ccxt_client import CcxtExchangeClient
from ingestor.exchange.client import ExchangeClient

__all__ = ["CcxtExchangeClient", "ExchangeClient"]
