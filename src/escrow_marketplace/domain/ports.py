"""Collaborator ports.

Protocols (structural subtyping) for everything the escrow core talks to but
does not own: persistence, payment and payout gateways, notifications and
rate limiting. Concrete adapters live in infrastructure/ and services/; the
domain layer has zero imports from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from escrow_marketplace.domain.enums import EscrowEvent, EscrowStatus

if TYPE_CHECKING:
    from escrow_marketplace.domain.disputes import AdminProfile, Dispute
    from escrow_marketplace.domain.models import Escrow
    from escrow_marketplace.domain.verification import UserProfile


# ---------------------------------------------------------------------------
# Gateway results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentInitialization:
    reference: str
    authorization_url: str
    access_code: str = ""


@dataclass(frozen=True)
class PaymentVerification:
    """Outcome of asking the payment gateway about a reference."""

    reference: str
    success: bool
    amount_paid: Decimal
    currency: str
    gateway_response: str = ""
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TransferVerification:
    reference: str
    success: bool
    amount: Decimal
    status: str = ""


@dataclass(frozen=True)
class TransitionNotice:
    """Payload handed to the notifier after a committed status change."""

    escrow_id: str
    event: EscrowEvent
    status: EscrowStatus
    actor_id: str
    recipients: tuple[str, ...]
    occurred_at: datetime
    note: str = ""


# ---------------------------------------------------------------------------
# Gateways
# ---------------------------------------------------------------------------


@runtime_checkable
class PaymentGateway(Protocol):
    async def initialize_payment(
        self, amount: Decimal, currency: str, reference: str, email: str
    ) -> PaymentInitialization:
        ...

    async def verify_payment(self, reference: str) -> PaymentVerification:
        ...


@runtime_checkable
class PayoutGateway(Protocol):
    async def initiate_transfer(
        self, amount: Decimal, currency: str, destination_id: str, reference: str
    ) -> str:
        ...

    async def verify_transfer(self, reference: str) -> TransferVerification:
        ...


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, notice: TransitionNotice) -> None:
        ...


@runtime_checkable
class RateLimiter(Protocol):
    async def hit(self, key: str) -> bool:
        """Count one request against `key`; False once the window is exhausted."""
        ...


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class EscrowStore(Protocol):
    async def add(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow. Raises DuplicateEscrowIdError on id collision."""
        ...

    async def get(self, escrow_id: str) -> Escrow:
        """Raises EscrowNotFoundError."""
        ...

    async def save(self, escrow: Escrow, expected_version: int) -> Escrow:
        """Compare-and-swap write. Raises ConcurrentModificationError on a stale version."""
        ...

    async def list_due_for_release(self, now: datetime, limit: int = 100) -> list[Escrow]:
        ...

    async def list_for_user(self, user_id: str) -> list[Escrow]:
        ...


class DisputeStore(Protocol):
    async def add(self, dispute: Dispute) -> Dispute:
        ...

    async def get(self, dispute_id: str) -> Dispute:
        """Raises DisputeNotFoundError."""
        ...

    async def save(self, dispute: Dispute, expected_version: int) -> Dispute:
        ...


class UserDirectory(Protocol):
    async def get(self, user_id: str) -> UserProfile:
        """Raises UserNotFoundError."""
        ...

    async def find_by_email(self, email: str) -> UserProfile | None:
        ...

    async def reserve_transaction(self, user_id: str, now: datetime, limit: int | None) -> bool:
        """Atomically count one escrow creation this month.

        Returns False, counting nothing, when `limit` is already used up.
        Raises UserNotFoundError.
        """
        ...

    async def release_transaction(self, user_id: str, now: datetime) -> None:
        """Give back a reservation whose escrow was never stored."""
        ...


class AdminDirectory(Protocol):
    async def get(self, admin_id: str) -> AdminProfile:
        """Raises PermissionDeniedError for an unknown admin."""
        ...
