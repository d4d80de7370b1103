"""FastAPI status application factory."""

from typing import Any

from fastapi import FastAPI

from ingestor.api import routes


def create_app(lifespan: Any = None) -> FastAPI:
    """Create the status API.

    Args:
        lifespan: Optional async context manager for startup/shutdown. main.py
                  uses it to run the scheduler inside uvicorn's event loop.

    Route handlers read the scheduler from ``app.state.scheduler``.
    """
    app = FastAPI(
        title="Market Data Ingestor",
        lifespan=lifespan,
    )
    app.include_router(routes.router)
    return app
