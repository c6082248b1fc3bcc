"""Domain layer — pure business logic with zero framework dependencies."""

from escrow_marketplace.domain.enums import (
    Currency,
    EscrowEvent,
    EscrowStatus,
    TierId,
)
from escrow_marketplace.domain.exceptions import (
    ConcurrentModificationError,
    EscrowError,
    EscrowNotFoundError,
    InvalidStateTransitionError,
    VerificationRequiredError,
)
from escrow_marketplace.domain.fees import FeeBreakdown, compute_fees
from escrow_marketplace.domain.models import Escrow
from escrow_marketplace.domain.state_machine import (
    EscrowStateMachine,
    validate_transition,
)
from escrow_marketplace.domain.tiers import get_tier
from escrow_marketplace.domain.verification import (
    Allowed,
    Denied,
    UserProfile,
    can_access_escrow,
)

__all__ = [
    "Currency",
    "EscrowEvent",
    "EscrowStatus",
    "TierId",
    "ConcurrentModificationError",
    "EscrowError",
    "EscrowNotFoundError",
    "InvalidStateTransitionError",
    "VerificationRequiredError",
    "FeeBreakdown",
    "compute_fees",
    "Escrow",
    "EscrowStateMachine",
    "validate_transition",
    "get_tier",
    "Allowed",
    "Denied",
    "UserProfile",
    "can_access_escrow",
]
