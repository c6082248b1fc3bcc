"""Liveness/readiness check.

The database decides overall health; Redis only backs the shared rate
limiter, so an outage there degrades to per-process limits and is
reported without failing the check.
"""

from __future__ import annotations

from fastapi import APIRouter

from escrow_marketplace.infrastructure.database.engine import database_status
from escrow_marketplace.infrastructure.redis_client import redis_status
from escrow_marketplace.schemas.escrow import HealthResponse

router = APIRouter(tags=["Health"])

VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check() -> HealthResponse:
    db = await database_status()
    return HealthResponse(
        status="ok" if db == "healthy" else "degraded",
        version=VERSION,
        database=db,
        redis=await redis_status(),
    )
