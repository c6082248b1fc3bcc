#!/usr/bin/env python3
"""Escrow Marketplace — End-to-End Simulation.

Simulates four scenarios between a BuyerBot and a SellerBot, with an
AdminBot stepping in for disputes:

    Scenario 1: Happy Path
        - Buyer creates a digital-delivery escrow
        - Seller accepts, buyer pays through the (simulated) gateway
        - Seller delivers, buyer confirms -> COMPLETED
        - Seller payout is started and confirmed -> PAID_OUT

    Scenario 2: Dispute Split
        - Escrow is funded and delivered
        - Buyer disputes the delivery
        - Admin assigns the dispute and rules a 40 % refund -> COMPLETED
        - Seller is paid the remaining 60 %

    Scenario 3: Cancellation
        - Escrow is funded, then the seller cancels -> CANCELLED
        - The buyer is refunded everything they paid, fee included

    Scenario 4: Auto-Release
        - Seller delivers, buyer goes silent
        - The clock moves past the auto-release window
        - The release sweep completes the escrow

Usage:
    # Option A: Dry-run against in-memory stores (instant, no database):
    uv run python simulation.py

    # Option B: Same scenarios through the SQL repositories on SQLite in-memory:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_marketplace.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from escrow_marketplace.domain.disputes import AdminProfile  # noqa: E402
from escrow_marketplace.domain.enums import (  # noqa: E402
    AdminRole,
    DeliveryMethod,
    KycStatus,
    ProofType,
    TierId,
)
from escrow_marketplace.domain.models import DeliveryProof  # noqa: E402
from escrow_marketplace.domain.verification import PayoutDestination, UserProfile  # noqa: E402
from escrow_marketplace.services.dispute_service import DisputeService  # noqa: E402
from escrow_marketplace.services.escrow_service import EscrowService  # noqa: E402
from escrow_marketplace.services.notifications import (  # noqa: E402
    LoggingNotifier,
    NotificationDispatcher,
)
from escrow_marketplace.services.payment_service import PaystackGateway  # noqa: E402

BUYER = UserProfile(
    user_id="usr_buyer",
    email="buyer@example.com",
    full_name="Bola Buyer",
    email_verified=True,
    kyc_status=KycStatus.APPROVED,
    tier=TierId.STARTER,
)
SELLER = UserProfile(
    user_id="usr_seller",
    email="seller@example.com",
    full_name="Sade Seller",
    email_verified=True,
    kyc_status=KycStatus.APPROVED,
    tier=TierId.FREE,
    payout_destinations=(
        PayoutDestination(
            "RCP_seller_main", verified=True, bank_name="Demo Bank", account_last4="4321"
        ),
    ),
)
ADMIN = AdminProfile(admin_id="adm_master", role=AdminRole.MASTER)


# ---------------------------------------------------------------------------
# Simulated clock
# ---------------------------------------------------------------------------
@dataclass
class SimClock:
    """Deterministic clock that scenarios advance by hand."""

    now: datetime = field(default_factory=lambda: datetime(2025, 3, 1, 9, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class MemoryBackend:
    """In-memory stores; nothing leaves the process."""

    async def start(self) -> None:
        from escrow_marketplace.infrastructure.memory import (
            InMemoryAdminDirectory,
            InMemoryDisputeStore,
            InMemoryEscrowStore,
            InMemoryUserDirectory,
        )

        self.escrows = InMemoryEscrowStore()
        self.disputes = InMemoryDisputeStore()
        self.users = InMemoryUserDirectory([BUYER, SELLER])
        self.admins = InMemoryAdminDirectory([ADMIN])
        logger.info("simulation.memory_backend_ready")

    def stores(self) -> dict[str, Any]:
        return {
            "escrows": self.escrows,
            "disputes": self.disputes,
            "users": self.users,
            "admins": self.admins,
        }

    async def commit(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class SqliteBackend:
    """SQL repositories on a throwaway SQLite database, one session per run."""

    async def start(self) -> None:
        from escrow_marketplace.infrastructure.database.engine import (
            build_engine,
            create_schema,
            make_session_factory,
        )
        from escrow_marketplace.infrastructure.database.repositories import (
            AdminRepository,
            DisputeRepository,
            EscrowRepository,
            UserRepository,
        )

        self._engine = build_engine("sqlite+aiosqlite:///:memory:")
        await create_schema(self._engine)
        self._session = make_session_factory(self._engine)()

        self.escrows = EscrowRepository(self._session)
        self.disputes = DisputeRepository(self._session)
        self.users = UserRepository(self._session)
        self.admins = AdminRepository(self._session)
        await self.users.add(BUYER)
        await self.users.add(SELLER)
        await self.admins.add(ADMIN)
        await self._session.commit()
        logger.info("simulation.sqlite_backend_ready")

    def stores(self) -> dict[str, Any]:
        return {
            "escrows": self.escrows,
            "disputes": self.disputes,
            "users": self.users,
            "admins": self.admins,
        }

    async def commit(self) -> None:
        await self._session.commit()

    async def stop(self) -> None:
        await self._session.close()
        await self._engine.dispose()


@dataclass
class World:
    """Everything a scenario needs, wired the way the API wires it."""

    backend: Any
    clock: SimClock
    notifications: NotificationDispatcher
    escrow_service: EscrowService
    dispute_service: DisputeService


async def build_world(use_sqlite: bool) -> World:
    backend = SqliteBackend() if use_sqlite else MemoryBackend()
    await backend.start()
    stores = backend.stores()
    clock = SimClock()
    gateway = PaystackGateway(simulate=True)
    notifications = NotificationDispatcher(LoggingNotifier())
    return World(
        backend=backend,
        clock=clock,
        notifications=notifications,
        escrow_service=EscrowService(
            escrows=stores["escrows"],
            disputes=stores["disputes"],
            users=stores["users"],
            payments=gateway,
            payouts=gateway,
            notifications=notifications,
            clock=clock,
        ),
        dispute_service=DisputeService(
            escrows=stores["escrows"],
            disputes=stores["disputes"],
            admins=stores["admins"],
            notifications=notifications,
            clock=clock,
        ),
    )


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class BuyerBot:
    """Simulated buyer that creates, funds and confirms escrows."""

    world: World
    user_id: str = BUYER.user_id

    async def create_escrow(self, amount: Decimal, title: str, **kwargs: Any) -> str:
        escrow = await self.world.escrow_service.create_escrow(
            buyer_id=self.user_id,
            seller_email=SELLER.email,
            amount=amount,
            currency="USD",
            title=title,
            **kwargs,
        )
        await self.world.backend.commit()
        logger.info("🔵 BUYER: Escrow created", escrow_id=escrow.escrow_id, amount=str(amount))
        return escrow.escrow_id

    async def pay(self, escrow_id: str) -> None:
        svc = self.world.escrow_service
        instructions = await svc.initialize_funding(escrow_id, self.user_id)
        logger.info(
            "🔵 BUYER: Checkout opened",
            escrow_id=escrow_id,
            buyer_pays=str(instructions.fees.buyer_pays),
            url=instructions.authorization_url,
        )
        await svc.fund_escrow(escrow_id, self.user_id, instructions.reference)
        await self.world.backend.commit()
        logger.info("🔵 BUYER: Escrow funded", escrow_id=escrow_id)

    async def confirm(self, escrow_id: str) -> None:
        await self.world.escrow_service.confirm_delivery(escrow_id, self.user_id)
        await self.world.backend.commit()
        logger.info("🔵 BUYER: Delivery confirmed", escrow_id=escrow_id)

    async def dispute(self, escrow_id: str, reason: str) -> str:
        escrow = await self.world.escrow_service.raise_dispute(
            escrow_id, self.user_id, reason, evidence=("photo-of-damage.jpg",)
        )
        await self.world.backend.commit()
        logger.info(
            "🔵 BUYER: Dispute raised", escrow_id=escrow_id, dispute_id=escrow.dispute.dispute_id
        )
        return escrow.dispute.dispute_id


@dataclass
class SellerBot:
    """Simulated seller that accepts, delivers and cancels escrows."""

    world: World
    user_id: str = SELLER.user_id

    async def accept(self, escrow_id: str) -> None:
        await self.world.escrow_service.accept_escrow(escrow_id, self.user_id)
        await self.world.backend.commit()
        logger.info("🟢 SELLER: Escrow accepted", escrow_id=escrow_id)

    async def deliver(self, escrow_id: str, link: str) -> None:
        proof = DeliveryProof(ProofType.DOWNLOAD_LINK, link, description="Final files uploaded")
        await self.world.escrow_service.submit_delivery(escrow_id, self.user_id, proof)
        await self.world.backend.commit()
        logger.info("🟢 SELLER: Delivery submitted", escrow_id=escrow_id)

    async def cancel(self, escrow_id: str, reason: str) -> None:
        await self.world.escrow_service.cancel_escrow(escrow_id, self.user_id, reason)
        await self.world.backend.commit()
        logger.info("🟢 SELLER: Escrow cancelled", escrow_id=escrow_id)


@dataclass
class AdminBot:
    world: World
    admin_id: str = ADMIN.admin_id

    async def resolve_split(self, dispute_id: str, refund_percentage: int) -> None:
        svc = self.world.dispute_service
        await svc.assign_dispute(dispute_id, self.admin_id)
        dispute = await svc.resolve_dispute(
            dispute_id,
            self.admin_id,
            resolution="split",
            winner="split",
            refund_percentage=refund_percentage,
            notes="Partial delivery; buyer refunded for the missing part",
        )
        await self.world.backend.commit()
        logger.info(
            "🟣 ADMIN: Dispute resolved",
            dispute_id=dispute_id,
            refund_percentage=str(dispute.refund_percentage),
        )


async def pay_out(world: World, escrow_id: str) -> None:
    svc = world.escrow_service
    reference = await svc.request_payout(escrow_id)
    await world.backend.commit()
    await svc.confirm_payout(escrow_id, reference)
    await world.backend.commit()
    logger.info("💸 PAYOUT: Confirmed", escrow_id=escrow_id, reference=reference)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_summary(world: World, escrow_id: str) -> None:
    """Print money movements and the audit trail for an escrow."""
    escrow = await world.escrow_service.get_escrow(escrow_id)
    print(f"\n  Status: {escrow.status.value} (version {escrow.version})")
    if escrow.payment is not None:
        fees = escrow.payment.fees
        print(
            f"  Fees ({fees.tier_id.value}): buyer paid {fees.buyer_pays}, "
            f"seller receives {fees.seller_receives}, platform keeps {fees.platform_fee}"
        )
    if escrow.settlement is not None:
        print(
            f"  Settlement: refund {escrow.settlement.refund_to_buyer} to buyer, "
            f"release {escrow.settlement.release_to_seller} to seller"
        )
    print("\n  📜 Audit Trail:")
    for i, entry in enumerate(escrow.timeline, 1):
        print(f"    {i}. {entry.status.value} (by {entry.actor_role.value} {entry.actor_id})")
    print()


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_happy_path(world: World) -> None:
    """Create -> accept -> fund -> deliver -> confirm -> payout."""
    banner("SCENARIO 1: Happy Path")
    buyer, seller = BuyerBot(world), SellerBot(world)

    section("Step 1: Buyer creates escrow, seller accepts")
    escrow_id = await buyer.create_escrow(Decimal("250.00"), "Landing page design")
    await seller.accept(escrow_id)

    section("Step 2: Buyer pays")
    await buyer.pay(escrow_id)

    section("Step 3: Seller delivers, buyer confirms")
    world.clock.advance(days=2)
    await seller.deliver(escrow_id, "https://files.example.com/landing-v1.zip")
    await buyer.confirm(escrow_id)

    section("Step 4: Payout")
    await pay_out(world, escrow_id)
    await print_summary(world, escrow_id)


async def scenario_2_dispute_split(world: World) -> None:
    """Buyer disputes a delivery; admin splits the escrow 40/60."""
    banner("SCENARIO 2: Dispute Resolved by Split")
    buyer, seller, admin = BuyerBot(world), SellerBot(world), AdminBot(world)

    section("Step 1: Setup (Create -> Fund -> Deliver)")
    escrow_id = await buyer.create_escrow(Decimal("400.00"), "Logo pack, 5 variants")
    await buyer.pay(escrow_id)
    await seller.deliver(escrow_id, "https://files.example.com/logos.zip")

    section("Step 2: Buyer disputes")
    dispute_id = await buyer.dispute(escrow_id, "Only three of the five variants were delivered")

    section("Step 3: Admin splits 40 % back to the buyer")
    await admin.resolve_split(dispute_id, refund_percentage=40)

    section("Step 4: Seller paid the remainder")
    await pay_out(world, escrow_id)
    await print_summary(world, escrow_id)


async def scenario_3_cancellation(world: World) -> None:
    """Seller cancels a funded escrow; the buyer is refunded in full."""
    banner("SCENARIO 3: Cancellation After Funding")
    buyer, seller = BuyerBot(world), SellerBot(world)

    escrow_id = await buyer.create_escrow(
        Decimal("90.00"), "Printed posters", delivery_method=DeliveryMethod.PHYSICAL
    )
    await buyer.pay(escrow_id)
    await seller.cancel(escrow_id, "Out of stock")
    await print_summary(world, escrow_id)


async def scenario_4_auto_release(world: World) -> None:
    """Buyer never confirms; the sweep releases the escrow after the window."""
    banner("SCENARIO 4: Auto-Release")
    buyer, seller = BuyerBot(world), SellerBot(world)

    escrow_id = await buyer.create_escrow(Decimal("60.00"), "Copy edit", auto_release_days=3)
    await buyer.pay(escrow_id)
    await seller.deliver(escrow_id, "https://files.example.com/edited.docx")

    section("Day 2: nothing due yet")
    world.clock.advance(days=2)
    released = await world.escrow_service.release_due_escrows()
    print(f"  Released: {[e.escrow_id for e in released]}")

    section("Day 4: window passed")
    world.clock.advance(days=2)
    released = await world.escrow_service.release_due_escrows()
    await world.backend.commit()
    print(f"  Released: {[e.escrow_id for e in released]}")
    await print_summary(world, escrow_id)


SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_dispute_split,
    3: scenario_3_cancellation,
    4: scenario_4_auto_release,
}


# ===========================================================================
# Main
# ===========================================================================
async def run(scenarios: list[int], use_sqlite: bool = False) -> None:
    """Run the given scenarios sequentially against a fresh world."""
    world = await build_world(use_sqlite)
    try:
        print("\n" + "🚀" * 35)
        print("  ESCROW MARKETPLACE — SIMULATION")
        print(f"  Stores: {'SQLite (in-memory)' if use_sqlite else 'in-memory'}")
        print("  Payments: simulated Paystack")
        print("🚀" * 35 + "\n")

        for num in scenarios:
            await SCENARIOS[num](world)

        await world.notifications.drain(timeout=5)
        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")
    finally:
        await world.backend.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Marketplace Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Run through the SQL repositories on SQLite in-memory instead of memory stores.",
    )
    args = parser.parse_args()

    if args.scenario and args.scenario not in SCENARIOS:
        parser.error(f"Unknown scenario {args.scenario}. Available: 1-4")
    selected = [args.scenario] if args.scenario else sorted(SCENARIOS)
    asyncio.run(run(selected, use_sqlite=args.sqlite))
