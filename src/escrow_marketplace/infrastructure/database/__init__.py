"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_marketplace.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
)
from escrow_marketplace.infrastructure.database.orm_models import (
    AdminRow,
    Base,
    DisputeRow,
    EscrowRow,
    PayoutDestinationRow,
    TimelineRow,
    UserRow,
)
from escrow_marketplace.infrastructure.database.repositories import (
    AdminRepository,
    DisputeRepository,
    EscrowRepository,
    UserRepository,
)

__all__ = [
    "AdminRow",
    "Base",
    "DisputeRow",
    "EscrowRow",
    "PayoutDestinationRow",
    "TimelineRow",
    "UserRow",
    "AdminRepository",
    "DisputeRepository",
    "EscrowRepository",
    "UserRepository",
    "get_async_session",
    "init_db",
    "close_db",
]
