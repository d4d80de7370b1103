"""Read-only JSON endpoints for service health and cadence statistics."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


def _serialize(value: Any) -> Any:
    """Convert datetimes to ISO strings for JSON."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    return value


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Liveness plus whether the scheduler timers are running."""
    scheduler = request.app.state.scheduler
    return JSONResponse({"status": "ok", "running": scheduler.is_running})


@router.get("/api/cadences")
async def cadences(request: Request) -> JSONResponse:
    """Per-cadence schedule and counters (fires, successes, failures, last error)."""
    scheduler = request.app.state.scheduler
    return JSONResponse([_serialize(asdict(stats)) for stats in scheduler.stats()])
