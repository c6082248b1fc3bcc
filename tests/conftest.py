"""Shared test fixtures for the Escrow Marketplace test suite.

Provides:
    - A frozen, hand-advanced clock
    - Verified buyer / seller / admin profiles
    - In-memory stores and a simulated payment gateway
    - Services wired the way the API wires them
    - `flow`, a helper that walks an escrow through its lifecycle
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from escrow_marketplace.domain.disputes import AdminProfile
from escrow_marketplace.domain.enums import (
    AdminPermission,
    AdminRole,
    KycStatus,
    ProofType,
    TierId,
)
from escrow_marketplace.domain.models import DeliveryProof, Escrow
from escrow_marketplace.domain.ports import TransitionNotice
from escrow_marketplace.domain.verification import PayoutDestination, UserProfile
from escrow_marketplace.infrastructure.memory import (
    InMemoryAdminDirectory,
    InMemoryDisputeStore,
    InMemoryEscrowStore,
    InMemoryUserDirectory,
)
from escrow_marketplace.services.dispute_service import DisputeService
from escrow_marketplace.services.escrow_service import EscrowService
from escrow_marketplace.services.notifications import NotificationDispatcher
from escrow_marketplace.services.payment_service import PaystackGateway

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


@dataclass
class FrozenClock:
    now: datetime = NOW

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@dataclass
class RecordingNotifier:
    notices: list[TransitionNotice] = field(default_factory=list)

    async def notify(self, notice: TransitionNotice) -> None:
        self.notices.append(notice)


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def buyer() -> UserProfile:
    """A fully verified Starter-tier buyer (3.5 % fees, 10 escrows/month)."""
    return UserProfile(
        user_id="buyer-1",
        email="buyer@example.com",
        email_verified=True,
        kyc_status=KycStatus.APPROVED,
        tier=TierId.STARTER,
    )


@pytest.fixture
def seller() -> UserProfile:
    """A verified seller with one verified payout destination."""
    return UserProfile(
        user_id="seller-1",
        email="seller@example.com",
        email_verified=True,
        kyc_status=KycStatus.APPROVED,
        payout_destinations=(PayoutDestination("RCP_1", verified=True, account_last4="0001"),),
    )


@pytest.fixture
def admin() -> AdminProfile:
    return AdminProfile(
        admin_id="admin-1",
        role=AdminRole.SUB_ADMIN,
        permissions=frozenset({AdminPermission.MANAGE_DISPUTES}),
    )


# ---------------------------------------------------------------------------
# Stores & collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def escrow_store() -> InMemoryEscrowStore:
    return InMemoryEscrowStore()


@pytest.fixture
def dispute_store() -> InMemoryDisputeStore:
    return InMemoryDisputeStore()


@pytest.fixture
def users(buyer: UserProfile, seller: UserProfile) -> InMemoryUserDirectory:
    return InMemoryUserDirectory([buyer, seller])


@pytest.fixture
def admins(admin: AdminProfile) -> InMemoryAdminDirectory:
    return InMemoryAdminDirectory([admin, AdminProfile(admin_id="viewer-1")])


@pytest.fixture
def gateway() -> PaystackGateway:
    return PaystackGateway(simulate=True)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier: RecordingNotifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def escrow_service(
    escrow_store: InMemoryEscrowStore,
    dispute_store: InMemoryDisputeStore,
    users: InMemoryUserDirectory,
    gateway: PaystackGateway,
    notifications: NotificationDispatcher,
    clock: FrozenClock,
) -> EscrowService:
    return EscrowService(
        escrows=escrow_store,
        disputes=dispute_store,
        users=users,
        payments=gateway,
        payouts=gateway,
        notifications=notifications,
        clock=clock,
    )


@pytest.fixture
def dispute_service(
    escrow_store: InMemoryEscrowStore,
    dispute_store: InMemoryDisputeStore,
    admins: InMemoryAdminDirectory,
    notifications: NotificationDispatcher,
    clock: FrozenClock,
) -> DisputeService:
    return DisputeService(
        escrows=escrow_store,
        disputes=dispute_store,
        admins=admins,
        notifications=notifications,
        clock=clock,
    )


@dataclass
class EscrowFlow:
    """Drives an escrow to a given status through the public service API."""

    service: EscrowService
    buyer: UserProfile
    seller: UserProfile

    async def create(self, amount: Decimal | str = "1000", **kwargs) -> Escrow:
        params = {
            "buyer_id": self.buyer.user_id,
            "seller_email": self.seller.email,
            "amount": amount,
            "currency": "USD",
            "title": "Vintage camera",
        }
        params.update(kwargs)
        return await self.service.create_escrow(**params)

    async def funded(self, amount: Decimal | str = "1000", **kwargs) -> Escrow:
        escrow = await self.create(amount, **kwargs)
        instructions = await self.service.initialize_funding(escrow.escrow_id, self.buyer.user_id)
        return await self.service.fund_escrow(
            escrow.escrow_id, self.buyer.user_id, instructions.reference
        )

    async def delivered(self, amount: Decimal | str = "1000", **kwargs) -> Escrow:
        escrow = await self.funded(amount, **kwargs)
        proof = DeliveryProof(ProofType.DOWNLOAD_LINK, "https://files.example.com/camera.zip")
        return await self.service.submit_delivery(escrow.escrow_id, self.seller.user_id, proof)

    async def completed(self, amount: Decimal | str = "1000", **kwargs) -> Escrow:
        escrow = await self.delivered(amount, **kwargs)
        return await self.service.confirm_delivery(escrow.escrow_id, self.buyer.user_id)


@pytest.fixture
def flow(escrow_service: EscrowService, buyer: UserProfile, seller: UserProfile) -> EscrowFlow:
    return EscrowFlow(escrow_service, buyer, seller)
