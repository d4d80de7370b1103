"""Status API exposing scheduler health and per-cadence statistics."""

from ingestor.api.app import create_app

__all__ = ["create_app"]
