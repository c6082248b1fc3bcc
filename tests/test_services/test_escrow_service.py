"""Tests for the EscrowService lifecycle against in-memory stores."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_marketplace.domain.enums import (
    AccountStatus,
    DeliveryMethod,
    DisputeStatus,
    EscrowEvent,
    EscrowStatus,
    ParticipantRole,
    ProofType,
    TierId,
)
from escrow_marketplace.domain.exceptions import (
    AutoReleaseNotDueError,
    ConcurrentModificationError,
    DeliveryProofMismatchError,
    DisputeAlreadyRaisedError,
    DuplicateEscrowIdError,
    InvalidParticipantsError,
    InvalidStateTransitionError,
    PaymentNotConfirmedError,
    PermissionDeniedError,
    RateLimitExceededError,
    UpgradeRequiredError,
    ValidationError,
    VerificationRequiredError,
)
from escrow_marketplace.domain.models import DeliveryProof
from escrow_marketplace.domain.verification import MonthlyUsage
from escrow_marketplace.infrastructure.memory import (
    InMemoryDisputeStore,
    InMemoryEscrowStore,
    InMemoryUserDirectory,
)
from escrow_marketplace.infrastructure.rate_limiter import InMemoryRateLimiter
from escrow_marketplace.services.escrow_service import EscrowService
from escrow_marketplace.services.notifications import NotificationDispatcher


class ExplodingNotifier:
    async def notify(self, notice) -> None:
        raise RuntimeError("smtp down")


class UnavailableDisputeStore(InMemoryDisputeStore):
    async def add(self, dispute):
        raise RuntimeError("dispute store down")


class YieldingUserDirectory(InMemoryUserDirectory):
    """Suspends on every read so concurrent callers interleave."""

    async def get(self, user_id):
        await asyncio.sleep(0)
        return await super().get(user_id)


class CollidingEscrowStore(InMemoryEscrowStore):
    async def add(self, escrow):
        raise DuplicateEscrowIdError(escrow.escrow_id)


class RecordingDisputeStore(InMemoryDisputeStore):
    """Remembers added dispute ids; runs `after_next_add` once."""

    def __init__(self) -> None:
        super().__init__()
        self.added: list[str] = []
        self.after_next_add = None

    async def add(self, dispute):
        stored = await super().add(dispute)
        self.added.append(stored.dispute_id)
        hook, self.after_next_add = self.after_next_add, None
        if hook is not None:
            await hook()
        return stored


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_creates_pending_escrow(self, flow, users, buyer, clock) -> None:
        escrow = await flow.create()

        assert escrow.status == EscrowStatus.PENDING
        assert escrow.escrow_id.startswith("ESC")
        assert escrow.buyer_id == "buyer-1"
        assert escrow.seller_id == "seller-1"
        assert escrow.amount == Decimal("1000.00")
        assert escrow.version == 1
        assert escrow.delivery.auto_release_days == 7
        assert escrow.delivery.auto_release_enabled is True

        stored = await users.get(buyer.user_id)
        assert stored.monthly_usage.count_for(clock()) == 1

    @pytest.mark.asyncio
    async def test_seller_email_is_case_insensitive(self, flow) -> None:
        escrow = await flow.create(seller_email="SELLER@Example.com")
        assert escrow.seller_id == "seller-1"

    @pytest.mark.asyncio
    async def test_self_escrow_rejected(self, flow, buyer) -> None:
        with pytest.raises(InvalidParticipantsError, match="yourself"):
            await flow.create(seller_email=buyer.email)

    @pytest.mark.asyncio
    async def test_unknown_seller(self, flow) -> None:
        with pytest.raises(InvalidParticipantsError):
            await flow.create(seller_email="nobody@example.com")

    @pytest.mark.asyncio
    async def test_suspended_seller(self, flow, users, seller) -> None:
        users.put(replace(seller, account_status=AccountStatus.SUSPENDED))
        with pytest.raises(InvalidParticipantsError):
            await flow.create()

    @pytest.mark.asyncio
    async def test_gate_denial_writes_nothing(self, flow, escrow_service, users, buyer) -> None:
        users.put(replace(buyer, email_verified=False))

        with pytest.raises(VerificationRequiredError) as exc_info:
            await flow.create()

        assert exc_info.value.step == 1
        assert exc_info.value.required_action == "verify_email"
        assert await escrow_service.list_escrows(buyer.user_id) == []

    @pytest.mark.asyncio
    async def test_amount_over_tier_ceiling(self, flow) -> None:
        with pytest.raises(UpgradeRequiredError) as exc_info:
            await flow.create(amount="2500")
        assert exc_info.value.step == 6
        assert exc_info.value.to_dict()["upgrade_required"] is True

    @pytest.mark.asyncio
    async def test_monthly_limit(self, flow, users, buyer, clock) -> None:
        usage = MonthlyUsage(transaction_count=10, reset_month=clock().strftime("%Y-%m"))
        users.put(replace(buyer, monthly_usage=usage))

        with pytest.raises(UpgradeRequiredError) as exc_info:
            await flow.create()
        assert exc_info.value.step == 5

    @pytest.mark.asyncio
    async def test_concurrent_creations_cannot_exceed_monthly_limit(
        self, escrow_store, dispute_store, gateway, clock, buyer, seller
    ) -> None:
        usage = MonthlyUsage(transaction_count=9, reset_month=clock().strftime("%Y-%m"))
        users = YieldingUserDirectory([replace(buyer, monthly_usage=usage), seller])
        svc = EscrowService(
            escrows=escrow_store,
            disputes=dispute_store,
            users=users,
            payments=gateway,
            payouts=gateway,
            clock=clock,
        )

        results = await asyncio.gather(
            svc.create_escrow(buyer.user_id, seller.email, "100", "USD", "First"),
            svc.create_escrow(buyer.user_id, seller.email, "100", "USD", "Second"),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        denied = [r for r in results if isinstance(r, UpgradeRequiredError)]
        assert len(created) == 1
        assert len(denied) == 1
        assert denied[0].step == 5
        assert (await users.get(buyer.user_id)).monthly_usage.count_for(clock()) == 10
        assert len(await escrow_store.list_for_user(buyer.user_id)) == 1

    @pytest.mark.asyncio
    async def test_failed_insert_releases_reservation(
        self, dispute_store, users, gateway, clock, buyer, seller
    ) -> None:
        svc = EscrowService(
            escrows=CollidingEscrowStore(),
            disputes=dispute_store,
            users=users,
            payments=gateway,
            payouts=gateway,
            clock=clock,
        )

        with pytest.raises(DuplicateEscrowIdError):
            await svc.create_escrow(buyer.user_id, seller.email, "100", "USD", "Lamp")

        assert (await users.get(buyer.user_id)).monthly_usage.count_for(clock()) == 0

    @pytest.mark.asyncio
    async def test_overrides_auto_release_settings(self, flow) -> None:
        escrow = await flow.create(auto_release_days=3, auto_release_enabled=False)
        assert escrow.delivery.auto_release_days == 3
        assert escrow.delivery.auto_release_enabled is False

    @pytest.mark.asyncio
    async def test_unknown_delivery_method(self, flow) -> None:
        with pytest.raises(ValidationError):
            await flow.create(delivery_method="teleport")

    @pytest.mark.asyncio
    async def test_rate_limited(
        self, escrow_store, dispute_store, users, gateway, clock, buyer, seller
    ) -> None:
        svc = EscrowService(
            escrows=escrow_store,
            disputes=dispute_store,
            users=users,
            payments=gateway,
            payouts=gateway,
            rate_limiter=InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=clock),
            clock=clock,
        )
        await svc.create_escrow(buyer.user_id, seller.email, "100", "USD", "First")

        with pytest.raises(RateLimitExceededError):
            await svc.create_escrow(buyer.user_id, seller.email, "100", "USD", "Second")


# ---------------------------------------------------------------------------
# Acceptance & funding
# ---------------------------------------------------------------------------


class TestFunding:
    @pytest.mark.asyncio
    async def test_seller_accepts(self, flow, escrow_service, seller) -> None:
        escrow = await flow.create()
        accepted = await escrow_service.accept_escrow(escrow.escrow_id, seller.user_id)

        assert accepted.status == EscrowStatus.ACCEPTED
        assert accepted.version == 2
        assert accepted.timeline[-1].actor_role == ParticipantRole.SELLER

    @pytest.mark.asyncio
    async def test_buyer_cannot_accept(self, flow, escrow_service, buyer) -> None:
        escrow = await flow.create()
        with pytest.raises(PermissionDeniedError):
            await escrow_service.accept_escrow(escrow.escrow_id, buyer.user_id)

    @pytest.mark.asyncio
    async def test_initialize_funding_prices_at_buyer_tier(
        self, flow, escrow_service, buyer
    ) -> None:
        escrow = await flow.create()
        instructions = await escrow_service.initialize_funding(escrow.escrow_id, buyer.user_id)

        assert instructions.reference.startswith(f"PAY-{escrow.escrow_id}-")
        assert instructions.fees.tier_id == TierId.STARTER
        assert instructions.fees.buyer_pays == Decimal("1035.00")
        assert "simulated" in instructions.authorization_url

        unchanged = await escrow_service.get_escrow(escrow.escrow_id)
        assert unchanged.version == escrow.version

    @pytest.mark.asyncio
    async def test_fund_snapshots_fees(self, flow) -> None:
        escrow = await flow.funded()

        assert escrow.status == EscrowStatus.FUNDED
        assert escrow.chat_unlocked
        assert escrow.payment.fees.buyer_pays == Decimal("1035.00")
        assert escrow.payment.fees.seller_receives == Decimal("965.00")
        assert escrow.payment.amount_paid == Decimal("1035.00")
        assert [e.status for e in escrow.timeline] == [EscrowStatus.FUNDED]

    @pytest.mark.asyncio
    async def test_tier_change_does_not_touch_snapshot(
        self, flow, escrow_service, users, buyer
    ) -> None:
        escrow = await flow.funded()
        users.set_tier(buyer.user_id, TierId.ENTERPRISE)

        reloaded = await escrow_service.get_escrow(escrow.escrow_id)
        assert reloaded.payment.fees.tier_id == TierId.STARTER
        assert reloaded.payment.fees.buyer_fee == Decimal("35.00")

    @pytest.mark.asyncio
    async def test_unknown_reference_leaves_escrow_pending(
        self, flow, escrow_service, buyer
    ) -> None:
        escrow = await flow.create()
        with pytest.raises(PaymentNotConfirmedError):
            await escrow_service.fund_escrow(
                escrow.escrow_id, buyer.user_id, f"PAY-{escrow.escrow_id}-0"
            )

        reloaded = await escrow_service.get_escrow(escrow.escrow_id)
        assert reloaded.status == EscrowStatus.PENDING
        assert reloaded.payment is None

    @pytest.mark.asyncio
    async def test_payment_cannot_fund_a_second_escrow(
        self, flow, escrow_service, buyer
    ) -> None:
        first = await flow.funded(amount="100")
        second = await flow.create(amount="100")

        with pytest.raises(PaymentNotConfirmedError, match="not issued for escrow"):
            await escrow_service.fund_escrow(
                second.escrow_id, buyer.user_id, first.payment.reference
            )

        reloaded = await escrow_service.get_escrow(second.escrow_id)
        assert reloaded.status == EscrowStatus.PENDING
        assert reloaded.payment is None

    @pytest.mark.asyncio
    async def test_short_payment_rejected(self, flow, escrow_service, gateway, buyer) -> None:
        escrow = await flow.create()
        reference = f"PAY-{escrow.escrow_id}-short"
        await gateway.initialize_payment(Decimal("1000.00"), "USD", reference, buyer.email)

        with pytest.raises(PaymentNotConfirmedError, match="expected 1035.00"):
            await escrow_service.fund_escrow(escrow.escrow_id, buyer.user_id, reference)

    @pytest.mark.asyncio
    async def test_currency_mismatch_rejected(self, flow, escrow_service, gateway, buyer) -> None:
        escrow = await flow.create()
        reference = f"PAY-{escrow.escrow_id}-ngn"
        await gateway.initialize_payment(Decimal("2000000"), "NGN", reference, buyer.email)

        with pytest.raises(PaymentNotConfirmedError, match="NGN"):
            await escrow_service.fund_escrow(escrow.escrow_id, buyer.user_id, reference)

    @pytest.mark.asyncio
    async def test_seller_cannot_fund(self, flow, escrow_service, seller) -> None:
        escrow = await flow.create()
        with pytest.raises(PermissionDeniedError):
            await escrow_service.initialize_funding(escrow.escrow_id, seller.user_id)

    @pytest.mark.asyncio
    async def test_fund_twice_is_illegal(self, flow, escrow_service, buyer) -> None:
        escrow = await flow.funded()
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.fund_escrow(
                escrow.escrow_id, buyer.user_id, escrow.payment.reference
            )


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDelivery:
    @pytest.mark.asyncio
    async def test_submit_delivery_schedules_auto_release(self, flow, clock) -> None:
        escrow = await flow.delivered()

        assert escrow.status == EscrowStatus.DELIVERED
        assert escrow.delivery.delivered_at == clock()
        assert escrow.delivery.auto_release_at == clock() + timedelta(days=7)
        assert escrow.delivery.proofs[0].submitted_at == clock()

    @pytest.mark.asyncio
    async def test_proof_must_match_method(self, flow, escrow_service, seller) -> None:
        escrow = await flow.funded()
        proof = DeliveryProof(ProofType.TRACKING_NUMBER, "1Z999")

        with pytest.raises(DeliveryProofMismatchError):
            await escrow_service.submit_delivery(escrow.escrow_id, seller.user_id, proof)

        reloaded = await escrow_service.get_escrow(escrow.escrow_id)
        assert reloaded.status == EscrowStatus.FUNDED
        assert reloaded.delivery.proofs == ()

    @pytest.mark.asyncio
    async def test_physical_delivery_accepts_tracking(self, flow, escrow_service, seller) -> None:
        escrow = await flow.funded(delivery_method=DeliveryMethod.PHYSICAL)
        proof = DeliveryProof(ProofType.TRACKING_NUMBER, "1Z999")

        delivered = await escrow_service.submit_delivery(escrow.escrow_id, seller.user_id, proof)
        assert delivered.status == EscrowStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_buyer_cannot_deliver(self, flow, escrow_service, buyer) -> None:
        escrow = await flow.funded()
        proof = DeliveryProof(ProofType.DOWNLOAD_LINK, "https://x")
        with pytest.raises(PermissionDeniedError):
            await escrow_service.submit_delivery(escrow.escrow_id, buyer.user_id, proof)

    @pytest.mark.asyncio
    async def test_buyer_confirms(self, flow, clock) -> None:
        escrow = await flow.completed()

        assert escrow.status == EscrowStatus.COMPLETED
        assert escrow.delivery.confirmed_at == clock()
        assert [e.status for e in escrow.timeline] == [
            EscrowStatus.FUNDED,
            EscrowStatus.DELIVERED,
            EscrowStatus.COMPLETED,
        ]


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_deliver_and_dispute_from_same_read(
        self, flow, escrow_service, buyer, seller, dispute_store
    ) -> None:
        escrow = await flow.funded()
        read_version = escrow.version
        proof = DeliveryProof(ProofType.DOWNLOAD_LINK, "https://files.example.com/a.zip")

        delivered = await escrow_service.submit_delivery(
            escrow.escrow_id, seller.user_id, proof, expected_version=read_version
        )
        with pytest.raises(ConcurrentModificationError):
            await escrow_service.raise_dispute(
                escrow.escrow_id,
                buyer.user_id,
                "Never received anything",
                expected_version=read_version,
            )

        final = await escrow_service.get_escrow(escrow.escrow_id)
        assert final.status == EscrowStatus.DELIVERED
        assert final.version == delivered.version
        assert not final.dispute.is_disputed

    @pytest.mark.asyncio
    async def test_stale_save_rejected_by_store(self, flow, escrow_store, clock) -> None:
        escrow = await flow.funded()
        first = await escrow_store.get(escrow.escrow_id)
        second = await escrow_store.get(escrow.escrow_id)

        first.apply(
            EscrowEvent.CANCEL, actor_id="buyer-1", actor_role=ParticipantRole.BUYER, now=clock()
        )
        await escrow_store.save(first, first.version)

        second.apply(
            EscrowEvent.SELLER_DELIVERS,
            actor_id="seller-1",
            actor_role=ParticipantRole.SELLER,
            now=clock(),
        )
        with pytest.raises(ConcurrentModificationError):
            await escrow_store.save(second, second.version)

        assert (await escrow_store.get(escrow.escrow_id)).status == EscrowStatus.CANCELLED


# ---------------------------------------------------------------------------
# Auto-release
# ---------------------------------------------------------------------------


class TestAutoRelease:
    @pytest.mark.asyncio
    async def test_not_due_yet(self, flow, escrow_service, clock) -> None:
        escrow = await flow.delivered()
        clock.advance(days=6, hours=23)
        with pytest.raises(AutoReleaseNotDueError):
            await escrow_service.release_if_due(escrow.escrow_id)

    @pytest.mark.asyncio
    async def test_releases_when_due(self, flow, escrow_service, clock) -> None:
        escrow = await flow.delivered()
        clock.advance(days=7)

        released = await escrow_service.release_if_due(escrow.escrow_id)

        assert released.status == EscrowStatus.COMPLETED
        assert released.timeline[-1].actor_role == ParticipantRole.SYSTEM

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, flow, escrow_service, clock) -> None:
        escrow = await flow.delivered()
        clock.advance(days=8)

        first = await escrow_service.release_if_due(escrow.escrow_id)
        second = await escrow_service.release_if_due(escrow.escrow_id)

        assert second.status == EscrowStatus.COMPLETED
        assert second.version == first.version
        assert len(second.timeline) == len(first.timeline)

    @pytest.mark.asyncio
    async def test_disabled_auto_release(self, flow, escrow_service, clock) -> None:
        escrow = await flow.delivered(auto_release_enabled=False)
        assert escrow.delivery.auto_release_at is None

        clock.advance(days=30)
        with pytest.raises(AutoReleaseNotDueError, match="disabled"):
            await escrow_service.release_if_due(escrow.escrow_id)

    @pytest.mark.asyncio
    async def test_sweep_releases_only_due(self, flow, escrow_service, buyer, clock) -> None:
        short = await flow.delivered(auto_release_days=1)
        long = await flow.delivered(auto_release_days=7)
        disputed = await flow.delivered(auto_release_days=1)
        await escrow_service.raise_dispute(
            disputed.escrow_id, buyer.user_id, "Files are corrupted"
        )
        clock.advance(days=2)

        released = await escrow_service.release_due_escrows()

        assert [e.escrow_id for e in released] == [short.escrow_id]
        assert (await escrow_service.get_escrow(long.escrow_id)).status == EscrowStatus.DELIVERED
        assert (
            await escrow_service.get_escrow(disputed.escrow_id)
        ).status == EscrowStatus.DISPUTED


# ---------------------------------------------------------------------------
# Payout
# ---------------------------------------------------------------------------


class TestPayout:
    @pytest.mark.asyncio
    async def test_request_payout_uses_snapshot(self, flow, escrow_service, gateway) -> None:
        escrow = await flow.completed()

        reference = await escrow_service.request_payout(escrow.escrow_id)

        assert reference == f"PAYOUT-{escrow.escrow_id}"
        transfer = await gateway.verify_transfer(reference)
        assert transfer.amount == Decimal("965.00")
        reloaded = await escrow_service.get_escrow(escrow.escrow_id)
        assert reloaded.payout_reference == reference
        assert reloaded.status == EscrowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_request_payout_twice_returns_same_reference(
        self, flow, escrow_service
    ) -> None:
        escrow = await flow.completed()
        first = await escrow_service.request_payout(escrow.escrow_id)
        second = await escrow_service.request_payout(escrow.escrow_id)
        assert first == second

    @pytest.mark.asyncio
    async def test_confirm_payout(self, flow, escrow_service) -> None:
        escrow = await flow.completed()
        reference = await escrow_service.request_payout(escrow.escrow_id)

        paid = await escrow_service.confirm_payout(escrow.escrow_id, reference)

        assert paid.status == EscrowStatus.PAID_OUT
        assert paid.is_final

    @pytest.mark.asyncio
    async def test_confirm_unknown_reference(self, flow, escrow_service) -> None:
        escrow = await flow.completed()
        await escrow_service.request_payout(escrow.escrow_id)
        with pytest.raises(PaymentNotConfirmedError):
            await escrow_service.confirm_payout(escrow.escrow_id, "PAYOUT-other")

    @pytest.mark.asyncio
    async def test_payout_before_completion(self, flow, escrow_service) -> None:
        escrow = await flow.delivered()
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.request_payout(escrow.escrow_id)

    @pytest.mark.asyncio
    async def test_seller_needs_verified_destination(
        self, flow, escrow_service, users, seller
    ) -> None:
        escrow = await flow.completed()
        users.put(replace(seller, payout_destinations=()))

        with pytest.raises(VerificationRequiredError) as exc_info:
            await escrow_service.request_payout(escrow.escrow_id)
        assert exc_info.value.required_action == "add_payout_method"


# ---------------------------------------------------------------------------
# Cancellation & disputes
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, flow, escrow_service, seller) -> None:
        escrow = await flow.create()
        cancelled = await escrow_service.cancel_escrow(
            escrow.escrow_id, seller.user_id, "Sold elsewhere"
        )

        assert cancelled.status == EscrowStatus.CANCELLED
        assert cancelled.settlement is None
        assert cancelled.timeline[-1].note == "Sold elsewhere"

    @pytest.mark.asyncio
    async def test_cancel_funded_refunds_everything_paid(
        self, flow, escrow_service, buyer
    ) -> None:
        escrow = await flow.funded()
        cancelled = await escrow_service.cancel_escrow(escrow.escrow_id, buyer.user_id)

        assert cancelled.settlement.refund_to_buyer == Decimal("1035.00")
        assert cancelled.settlement.release_to_seller == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_cannot_cancel_after_delivery(self, flow, escrow_service, buyer) -> None:
        escrow = await flow.delivered()
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.cancel_escrow(escrow.escrow_id, buyer.user_id)

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, flow, escrow_service) -> None:
        escrow = await flow.create()
        with pytest.raises(PermissionDeniedError):
            await escrow_service.cancel_escrow(escrow.escrow_id, "intruder")


class TestRaiseDispute:
    @pytest.mark.asyncio
    async def test_raise_on_delivered(self, flow, escrow_service, dispute_store, buyer) -> None:
        escrow = await flow.delivered()
        disputed = await escrow_service.raise_dispute(
            escrow.escrow_id,
            buyer.user_id,
            "Files are corrupted",
            evidence=["screenshot.png"],
            dispute_type="item_not_as_described",
        )

        assert disputed.status == EscrowStatus.DISPUTED
        assert disputed.dispute.is_open
        dispute = await dispute_store.get(disputed.dispute.dispute_id)
        assert dispute.reported_by == buyer.user_id
        assert dispute.reported_user == "seller-1"
        assert dispute.reporter_role == ParticipantRole.BUYER
        assert dispute.evidence == ("screenshot.png",)

    @pytest.mark.asyncio
    async def test_cannot_dispute_pending(self, flow, escrow_service, buyer) -> None:
        escrow = await flow.create()
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.raise_dispute(escrow.escrow_id, buyer.user_id, "Changed my mind")

    @pytest.mark.asyncio
    async def test_second_dispute_rejected(self, flow, escrow_service, buyer, seller) -> None:
        escrow = await flow.funded()
        await escrow_service.raise_dispute(escrow.escrow_id, buyer.user_id, "Seller vanished")
        with pytest.raises(DisputeAlreadyRaisedError):
            await escrow_service.raise_dispute(escrow.escrow_id, seller.user_id, "I am here")

    @pytest.mark.asyncio
    async def test_dispute_stored_before_anyone_is_told(
        self, flow, escrow_store, users, gateway, notifications, notifier, clock, buyer
    ) -> None:
        escrow = await flow.delivered()
        svc = EscrowService(
            escrows=escrow_store,
            disputes=UnavailableDisputeStore(),
            users=users,
            payments=gateway,
            payouts=gateway,
            notifications=notifications,
            clock=clock,
        )
        await notifications.drain(timeout=1)
        sent = len(notifier.notices)

        with pytest.raises(RuntimeError, match="dispute store down"):
            await svc.raise_dispute(escrow.escrow_id, buyer.user_id, "Files are corrupted")

        await notifications.drain(timeout=1)
        assert len(notifier.notices) == sent
        stored = await escrow_store.get(escrow.escrow_id)
        assert stored.status == EscrowStatus.DELIVERED
        assert not stored.dispute.is_disputed

    @pytest.mark.asyncio
    async def test_lost_escrow_write_dismisses_new_dispute(
        self, flow, escrow_store, users, gateway, clock, buyer, seller
    ) -> None:
        disputes = RecordingDisputeStore()
        svc = EscrowService(
            escrows=escrow_store,
            disputes=disputes,
            users=users,
            payments=gateway,
            payouts=gateway,
            clock=clock,
        )
        escrow = await flow.funded()

        async def seller_cancels_first() -> None:
            await svc.cancel_escrow(escrow.escrow_id, seller.user_id, "Out of stock")

        disputes.after_next_add = seller_cancels_first
        with pytest.raises(ConcurrentModificationError):
            await svc.raise_dispute(escrow.escrow_id, buyer.user_id, "Files are corrupted")

        (dispute_id,) = disputes.added
        dispute = await disputes.get(dispute_id)
        assert dispute.status == DisputeStatus.DISMISSED
        assert [h.action for h in dispute.history] == ["opened", "dismissed"]
        assert not (await escrow_store.get(escrow.escrow_id)).dispute.is_disputed


# ---------------------------------------------------------------------------
# Reads & notifications
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, flow, escrow_service) -> None:
        escrow = await flow.funded()
        status = await escrow_service.get_status(escrow.escrow_id)

        assert status["status"] == "funded"
        assert status["chat_unlocked"] is True
        assert set(status["allowed_events"]) == {"seller_delivers", "cancel", "raise_dispute"}

    @pytest.mark.asyncio
    async def test_list_newest_first(self, flow, escrow_service, buyer, seller, clock) -> None:
        older = await flow.create(title="Older")
        clock.advance(minutes=5)
        newer = await flow.create(title="Newer")

        for user_id in (buyer.user_id, seller.user_id):
            listed = await escrow_service.list_escrows(user_id)
            assert [e.escrow_id for e in listed] == [newer.escrow_id, older.escrow_id]

    @pytest.mark.asyncio
    async def test_timeline(self, flow, escrow_service) -> None:
        escrow = await flow.completed()
        timeline = await escrow_service.get_timeline(escrow.escrow_id)
        assert [entry.actor_id for entry in timeline] == ["buyer-1", "seller-1", "buyer-1"]


class TestNotifications:
    @pytest.mark.asyncio
    async def test_transition_notifies_both_parties(self, flow, notifications, notifier) -> None:
        escrow = await flow.funded()
        await notifications.drain(timeout=1)

        assert len(notifier.notices) == 1
        notice = notifier.notices[0]
        assert notice.escrow_id == escrow.escrow_id
        assert notice.event == EscrowEvent.BUYER_FUNDS
        assert notice.recipients == ("buyer-1", "seller-1")

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_undo_transition(
        self, escrow_store, dispute_store, users, gateway, clock, buyer, seller
    ) -> None:
        dispatcher = NotificationDispatcher(ExplodingNotifier())
        svc = EscrowService(
            escrows=escrow_store,
            disputes=dispute_store,
            users=users,
            payments=gateway,
            payouts=gateway,
            notifications=dispatcher,
            clock=clock,
        )
        escrow = await svc.create_escrow(buyer.user_id, seller.email, "100", "USD", "Book")
        accepted = await svc.accept_escrow(escrow.escrow_id, seller.user_id)
        await dispatcher.drain(timeout=1)

        assert accepted.status == EscrowStatus.ACCEPTED
        assert (await svc.get_escrow(escrow.escrow_id)).status == EscrowStatus.ACCEPTED
        assert dispatcher.pending == 0
