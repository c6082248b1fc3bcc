"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject database sessions,
services and the caller's identity. Process-wide collaborators (payment
gateway, notification dispatcher, rate limiter) live on `app.state` and are
set up by the application factory.

Authentication is out of scope: the caller identifies itself with the
`X-User-ID` header (`X-Admin-ID` on admin routes), which an upstream
gateway is expected to set.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from escrow_marketplace.config import Settings, get_settings
from escrow_marketplace.infrastructure.database.engine import get_async_session
from escrow_marketplace.infrastructure.database.repositories import (
    AdminRepository,
    DisputeRepository,
    EscrowRepository,
    UserRepository,
)
from escrow_marketplace.services.dispute_service import DisputeService
from escrow_marketplace.services.escrow_service import EscrowService
from escrow_marketplace.services.pricing_service import PricingService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


def get_current_admin_id(x_admin_id: str = Header(..., min_length=1)) -> str:
    return x_admin_id


async def get_escrow_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
) -> EscrowService:
    """Provide an EscrowService bound to the current session."""
    state = request.app.state
    return EscrowService(
        escrows=EscrowRepository(session),
        disputes=DisputeRepository(session),
        users=UserRepository(session),
        payments=state.payment_gateway,
        payouts=state.payment_gateway,
        notifications=state.notifications,
        rate_limiter=state.rate_limiter,
        default_auto_release_days=settings.default_auto_release_days,
        auto_release_enabled_by_default=settings.auto_release_enabled_by_default,
    )


async def get_dispute_service(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> DisputeService:
    return DisputeService(
        escrows=EscrowRepository(session),
        disputes=DisputeRepository(session),
        admins=AdminRepository(session),
        notifications=request.app.state.notifications,
    )


async def get_pricing_service(
    session: AsyncSession = Depends(get_db_session),
) -> PricingService:
    return PricingService(UserRepository(session))
