"""Multi-cadence market data ingestor with a shared rate-limited exchange layer."""
