"""System endpoints (health)."""

from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select

from .. import schemas
from ..deps import get_event_store, get_profile_store
from ..errors import UpstreamQueryError
from ..stores import StoreClient

router = APIRouter(prefix="", tags=["System"])
logger = logging.getLogger(__name__)

# Global startup time for uptime calculation
_STARTUP_TIME = time.time()


@router.get("/health", response_model=schemas.HealthResponse)
def get_health() -> schemas.HealthResponse:
    """Liveness check."""
    uptime_s = time.time() - _STARTUP_TIME
    return schemas.HealthResponse(status="ok", uptime_s=uptime_s)


@router.get("/health/stores")
async def check_store_health(
    event_store: StoreClient = Depends(get_event_store),
    profile_store: StoreClient = Depends(get_profile_store),
) -> dict:
    """
    Store readiness check.

    Returns 200 if both stores answer a trivial query, 503 if not.
    """
    try:
        await asyncio.gather(
            event_store.scalar(select(1)),
            profile_store.scalar(select(1)),
        )
    except UpstreamQueryError as e:
        logger.error(f"Store health check failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{e.store} unavailable",
        )
    return {"status": "ok"}
