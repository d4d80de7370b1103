"""Entry point for the market data ingestor.

Wires all components together, optionally embeds the FastAPI status API, and
runs the collection scheduler. When the API is enabled (default) the
scheduler and uvicorn share one asyncio event loop through FastAPI's lifespan
context manager.

SIGINT/SIGTERM set the process-wide shutdown event: timers stop firing,
in-flight cycles see it at their next wait, and exchange sessions are closed.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. RateLimiter (one instance for the whole process)
4. CcxtExchangeClient per configured exchange, all sharing the RateLimiter
5. Collector scope (one database connection + DataCollectionOrchestrator per cycle)
6. CollectionScheduler
"""

import asyncio
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from ingestor.collector import DataCollectionOrchestrator
from ingestor.config import AppSettings
from ingestor.data import MarketDataDatabase, MarketDataStore
from ingestor.exceptions import OperationCancelled, UnsupportedExchangeError
from ingestor.exchange import CcxtExchangeClient, ExchangeClient
from ingestor.logging import get_logger, setup_logging
from ingestor.rate_limiter import RateLimiter
from ingestor.scheduler import CollectionScheduler


def _build_components(settings: AppSettings, cancel_event: asyncio.Event) -> dict[str, Any]:
    """Build the dependency graph from settings.

    Does NOT connect exchange clients; that happens in the lifespan (API
    mode) or run() (headless mode).

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("ingestor.main")
    rate_limiter = RateLimiter(settings.rate_limit)

    clients: dict[str, ExchangeClient] = {}
    for exchange_id in settings.collection.exchanges:
        try:
            clients[exchange_id] = CcxtExchangeClient(
                exchange_id,
                rate_limiter,
                page_limit=settings.collection.ohlcv_page_limit,
            )
        except UnsupportedExchangeError as e:
            # series for this exchange are counted as failed on every cycle
            logger.error("exchange_not_supported", exchange=exchange_id, error=str(e))

    @asynccontextmanager
    async def collector_scope() -> AsyncIterator[DataCollectionOrchestrator]:
        async with MarketDataDatabase(settings.storage.db_path) as database:
            yield DataCollectionOrchestrator(
                clients, MarketDataStore(database), settings.collection
            )

    scheduler = CollectionScheduler(
        schedule=settings.schedule,
        collection=settings.collection,
        collector_scope=collector_scope,
        cancel_event=cancel_event,
    )

    return {
        "rate_limiter": rate_limiter,
        "clients": clients,
        "scheduler": scheduler,
    }


def _setup_signal_handlers(cancel_event: asyncio.Event) -> None:
    """Set the shutdown event on SIGINT/SIGTERM.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("ingestor.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _connect_clients(
    clients: dict[str, ExchangeClient], cancel_event: asyncio.Event | None = None
) -> None:
    """Connect every client; one failing exchange does not block the others.

    Stops early if shutdown is requested while a connect is backing off.
    """
    logger = get_logger("ingestor.main")
    for name, client in clients.items():
        try:
            await client.connect(cancel_event)
        except OperationCancelled:
            logger.info("exchange_connect_cancelled", exchange=name)
            return
        except Exception as e:
            logger.error("exchange_connect_failed", exchange=name, error=str(e))


async def _close_clients(clients: dict[str, ExchangeClient]) -> None:
    logger = get_logger("ingestor.main")
    for name, client in clients.items():
        try:
            await client.close()
        except Exception as e:
            logger.warning("exchange_close_failed", exchange=name, error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the scheduler for the lifetime of the API server.

    On startup: connects exchange clients and starts the scheduler hosting
    task. On shutdown: sets the shutdown event, waits for the scheduler to
    stop, and closes exchange sessions.
    """
    logger = get_logger("ingestor.main")
    components = app.state.components
    scheduler: CollectionScheduler = components["scheduler"]
    app.state.scheduler = scheduler

    await _connect_clients(components["clients"], scheduler.cancel_event)
    scheduler_task = asyncio.create_task(scheduler.run())
    logger.info("lifespan_started")

    yield

    scheduler.cancel_event.set()
    await scheduler_task
    await _close_clients(components["clients"])
    logger.info("market_data_ingestor_stopped")


async def run() -> None:
    """Run the ingestor.

    With the API enabled (API_ENABLED=true, the default) uvicorn hosts both
    the status API and the scheduler, and uvicorn handles signals. With the
    API disabled the scheduler runs directly and this function installs the
    signal handlers.
    """
    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("ingestor.main")

    cancel_event = asyncio.Event()
    components = _build_components(settings, cancel_event)

    if settings.api.enabled:
        from ingestor.api import create_app

        app = create_app(lifespan=lifespan)
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            exchanges=settings.collection.exchanges,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(cancel_event)
        logger.info(
            "starting_without_api",
            exchanges=settings.collection.exchanges,
            symbols=len(settings.collection.symbols),
        )
        try:
            await _connect_clients(components["clients"], cancel_event)
            await components["scheduler"].run()
        finally:
            await _close_clients(components["clients"])
            logger.info("market_data_ingestor_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
