"""FastAPI application entry point for the Escrow Marketplace.

Process-wide collaborators live on ``app.state`` and are built by the
factory, so tests can drive the app without running the lifespan:

    payment_gateway   PaystackGateway (simulated unless PAYMENTS_SIMULATE=false)
    notifications     NotificationDispatcher, drained on shutdown
    rate_limiter      per-process limiter, swapped for the Redis one at startup

Run with:
    uvicorn escrow_marketplace.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from escrow_marketplace.config import Settings, get_settings
from escrow_marketplace.infrastructure.database.engine import close_db, init_db
from escrow_marketplace.infrastructure.rate_limiter import InMemoryRateLimiter, RedisRateLimiter
from escrow_marketplace.infrastructure.redis_client import close_redis, init_redis
from escrow_marketplace.logging_config import get_logger, setup_logging
from escrow_marketplace.services.notifications import LoggingNotifier, NotificationDispatcher
from escrow_marketplace.services.payment_service import PaystackGateway

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)


async def _use_redis_rate_limiter(app: FastAPI, settings: Settings) -> None:
    """Share the creation limit across workers; keep the local limiter if Redis is down."""
    try:
        redis = await init_redis(settings)
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc), fallback="in_memory")
        return
    app.state.rate_limiter = RedisRateLimiter(
        redis,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=settings.json_logs)
    logger.info(
        "app.starting",
        env=settings.app_env,
        payments_simulated=settings.payments_simulate,
        redis_enabled=settings.redis_enabled,
    )

    await init_db()
    if settings.redis_enabled:
        await _use_redis_rate_limiter(app, settings)

    logger.info(
        "app.started",
        host=settings.app_host,
        port=settings.app_port,
        rate_limiter=type(app.state.rate_limiter).__name__,
    )

    yield

    logger.info("app.shutting_down", pending_notifications=app.state.notifications.pending)
    await app.state.notifications.drain(timeout=settings.notification_drain_timeout_seconds)
    await app.state.payment_gateway.aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Escrow Marketplace",
        description="Two-party escrow with tiered fees, KYC gating and admin dispute resolution.",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    app.state.payment_gateway = PaystackGateway.from_settings(settings)
    app.state.notifications = NotificationDispatcher(LoggingNotifier())
    app.state.rate_limiter = InMemoryRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    from escrow_marketplace.api.middleware import setup_middleware
    from escrow_marketplace.api.routes.disputes import router as disputes_router
    from escrow_marketplace.api.routes.escrows import router as escrows_router
    from escrow_marketplace.api.routes.fees import router as fees_router
    from escrow_marketplace.api.routes.health import router as health_router

    setup_middleware(app)
    for router in (health_router, escrows_router, disputes_router, fees_router):
        app.include_router(router)

    return app


# The app instance used by Uvicorn
app = create_app()
