"""Escrow Service — core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Verification Gate (who may act)
    - Fee Calculator (snapshot at funding)
    - Escrow aggregate + state machine (what may happen)
    - Stores (compare-and-swap persistence)
    - Payment/payout gateways and the notification dispatcher

Every mutation follows the same shape: read the escrow, check guards
against that read, mutate the aggregate, then save conditionally on the
version that was read. A stale read surfaces as ConcurrentModificationError
and is never retried here.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

from escrow_marketplace.domain.enums import (
    DeliveryMethod,
    DisputeStatus,
    DisputeType,
    EscrowEvent,
    EscrowStatus,
    ParticipantRole,
    PaymentMethod,
)
from escrow_marketplace.domain.exceptions import (
    AutoReleaseNotDueError,
    ConcurrentModificationError,
    DisputeAlreadyRaisedError,
    DuplicateEscrowIdError,
    InvalidParticipantsError,
    InvariantViolationError,
    PaymentNotConfirmedError,
    PermissionDeniedError,
    RateLimitExceededError,
    UpgradeRequiredError,
    ValidationError,
    VerificationRequiredError,
)
from escrow_marketplace.domain.disputes import Dispute, dismiss
from escrow_marketplace.domain.fees import FeeBreakdown, compute_fees
from escrow_marketplace.domain.models import (
    DEFAULT_AUTO_RELEASE_DAYS,
    Delivery,
    DeliveryProof,
    DisputeInfo,
    Escrow,
    PaymentSnapshot,
    Settlement,
    generate_escrow_id,
)
from escrow_marketplace.domain.ports import TransitionNotice
from escrow_marketplace.domain.state_machine import allowed_events, validate_transition
from escrow_marketplace.domain.verification import (
    Denied,
    can_access_escrow,
    can_create_transaction,
    can_receive_payouts,
    monthly_cap,
    monthly_limit_denial,
)
from escrow_marketplace.logging_config import get_logger
from escrow_marketplace.services.notifications import NotificationDispatcher

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from escrow_marketplace.domain.models import TimelineEntry
    from escrow_marketplace.domain.ports import (
        DisputeStore,
        EscrowStore,
        PaymentGateway,
        PayoutGateway,
        RateLimiter,
        UserDirectory,
    )

logger = get_logger(__name__)

StrEnumT = TypeVar("StrEnumT", bound=StrEnum)

SYSTEM_ACTOR = "system"
ESCROW_ID_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _funding_prefix(escrow_id: str) -> str:
    return f"PAY-{escrow_id}-"


def _raise_denied(denial: Denied) -> None:
    if denial.upgrade_required:
        raise UpgradeRequiredError(denial)
    raise VerificationRequiredError(denial)


def _parse_choice(enum_cls: type[StrEnumT], value: object, label: str) -> StrEnumT:
    try:
        return enum_cls(str(value))
    except ValueError as err:
        raise ValidationError(f"Unsupported {label}: {value}") from err


@dataclass(frozen=True)
class FundingInstructions:
    """What the buyer needs to complete payment at the gateway."""

    escrow_id: str
    reference: str
    authorization_url: str
    access_code: str
    fees: FeeBreakdown

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "reference": self.reference,
            "authorization_url": self.authorization_url,
            "access_code": self.access_code,
            "fees": self.fees.to_dict(),
        }


class EscrowService:
    """Manages the escrow lifecycle."""

    def __init__(
        self,
        *,
        escrows: EscrowStore,
        disputes: DisputeStore,
        users: UserDirectory,
        payments: PaymentGateway,
        payouts: PayoutGateway,
        notifications: NotificationDispatcher | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = _utcnow,
        default_auto_release_days: int = DEFAULT_AUTO_RELEASE_DAYS,
        auto_release_enabled_by_default: bool = True,
    ) -> None:
        self._escrows = escrows
        self._disputes = disputes
        self._users = users
        self._payments = payments
        self._payouts = payouts
        self._notifications = notifications or NotificationDispatcher()
        self._rate_limiter = rate_limiter
        self._clock = clock
        self._default_auto_release_days = default_auto_release_days
        self._auto_release_by_default = auto_release_enabled_by_default

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        buyer_id: str,
        seller_email: str,
        amount: Decimal | str | int,
        currency: str,
        title: str,
        description: str = "",
        delivery_method: DeliveryMethod | str = DeliveryMethod.DIGITAL,
        auto_release_days: int | None = None,
        auto_release_enabled: bool | None = None,
    ) -> Escrow:
        """Create a new escrow in `pending` with the caller as buyer.

        Raises:
            RateLimitExceededError: too many creations in the current window.
            VerificationRequiredError / UpgradeRequiredError: the gate denied the buyer.
            InvalidParticipantsError: seller unknown, inactive, or the buyer themself.
        """
        if self._rate_limiter is not None:
            key = f"escrow.create:{buyer_id}"
            if not await self._rate_limiter.hit(key):
                raise RateLimitExceededError(key)

        now = self._clock()
        buyer = await self._users.get(buyer_id)
        decision = can_create_transaction(buyer, amount, currency, now)
        if not decision:
            logger.info("escrow.creation_denied", buyer_id=buyer_id, **decision.to_dict())
            _raise_denied(decision)

        seller = await self._users.find_by_email(seller_email)
        if seller is None:
            raise InvalidParticipantsError(f"No account found for seller {seller_email}")
        if seller.user_id == buyer.user_id:
            raise InvalidParticipantsError("You cannot create an escrow with yourself")
        if not seller.is_active:
            raise InvalidParticipantsError("Seller account is suspended or deleted")

        delivery = Delivery(
            method=_parse_choice(DeliveryMethod, delivery_method, "delivery method"),
            auto_release_enabled=(
                self._auto_release_by_default
                if auto_release_enabled is None
                else auto_release_enabled
            ),
            auto_release_days=(
                self._default_auto_release_days
                if auto_release_days is None
                else auto_release_days
            ),
        )

        escrow = Escrow.create(
            escrow_id=generate_escrow_id(now),
            title=title,
            description=description,
            amount=amount,
            currency=currency,
            buyer_id=buyer.user_id,
            seller_id=seller.user_id,
            now=now,
            delivery=delivery,
        )

        cap = monthly_cap(buyer.tier)
        if not await self._users.reserve_transaction(buyer.user_id, now, cap):
            current = (await self._users.get(buyer.user_id)).monthly_usage.count_for(now)
            denial = monthly_limit_denial(buyer.tier, current)
            logger.info("escrow.creation_denied", buyer_id=buyer_id, **denial.to_dict())
            _raise_denied(denial)

        try:
            escrow = await self._insert(escrow, now)
        except Exception:
            await self._users.release_transaction(buyer.user_id, now)
            raise
        logger.info(
            "escrow.created",
            escrow_id=escrow.escrow_id,
            buyer_id=escrow.buyer_id,
            seller_id=escrow.seller_id,
            amount=str(escrow.amount),
            currency=escrow.currency.value,
        )
        return escrow

    async def _insert(self, escrow: Escrow, now: datetime) -> Escrow:
        """Store a new escrow, drawing a fresh id on collision."""
        for attempt in range(1, ESCROW_ID_ATTEMPTS + 1):
            try:
                return await self._escrows.add(escrow)
            except DuplicateEscrowIdError:
                if attempt == ESCROW_ID_ATTEMPTS:
                    raise
                logger.warning("escrow.id_collision", escrow_id=escrow.escrow_id, attempt=attempt)
                escrow = replace(escrow, escrow_id=generate_escrow_id(now))
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Acceptance & funding
    # ------------------------------------------------------------------

    async def accept_escrow(
        self, escrow_id: str, actor_id: str, expected_version: int | None = None
    ) -> Escrow:
        """Seller accepts the terms: pending -> accepted."""
        escrow = await self._load(escrow_id, expected_version)
        self._require_party(escrow, actor_id, ParticipantRole.SELLER, "accept this escrow")
        return await self._transition(
            escrow, EscrowEvent.SELLER_ACCEPTS, actor_id, ParticipantRole.SELLER
        )

    async def initialize_funding(self, escrow_id: str, actor_id: str) -> FundingInstructions:
        """First phase of funding: price the escrow and open a gateway payment.

        Nothing is written to the escrow; `fund_escrow` re-enters the state
        machine once the gateway reports the payment.
        """
        escrow = await self._escrows.get(escrow_id)
        self._require_party(escrow, actor_id, ParticipantRole.BUYER, "fund this escrow")
        validate_transition(escrow.status, EscrowEvent.BUYER_FUNDS)

        buyer = await self._users.get(actor_id)
        decision = can_access_escrow(buyer)
        if not decision:
            _raise_denied(decision)

        fees = compute_fees(escrow.amount, escrow.currency, buyer.tier)
        reference = f"{_funding_prefix(escrow.escrow_id)}{int(self._clock().timestamp())}"
        init = await self._payments.initialize_payment(
            fees.buyer_pays, escrow.currency.value, reference, buyer.email
        )
        logger.info(
            "escrow.funding_initialized",
            escrow_id=escrow_id,
            reference=init.reference,
            buyer_pays=str(fees.buyer_pays),
        )
        return FundingInstructions(
            escrow_id=escrow.escrow_id,
            reference=init.reference,
            authorization_url=init.authorization_url,
            access_code=init.access_code,
            fees=fees,
        )

    async def fund_escrow(
        self,
        escrow_id: str,
        actor_id: str,
        payment_reference: str,
        payment_method: PaymentMethod | str = PaymentMethod.PAYSTACK,
        expected_version: int | None = None,
    ) -> Escrow:
        """Second phase of funding: confirm the payment and snapshot the fees.

        Only references opened by `initialize_funding` for this escrow are
        accepted, and the store refuses a reference that already funds
        another escrow.

        Raises:
            PaymentNotConfirmedError: the reference was not issued for this
                escrow, or the gateway does not report a full payment.
            PaymentReferenceInUseError: the payment already funds another escrow.
            UpstreamUnavailableError: the gateway could not be reached.
        """
        escrow = await self._load(escrow_id, expected_version)
        self._require_party(escrow, actor_id, ParticipantRole.BUYER, "fund this escrow")
        validate_transition(escrow.status, EscrowEvent.BUYER_FUNDS)

        buyer = await self._users.get(actor_id)
        decision = can_access_escrow(buyer)
        if not decision:
            _raise_denied(decision)

        if not payment_reference.startswith(_funding_prefix(escrow.escrow_id)):
            logger.warning(
                "escrow.foreign_payment_reference",
                escrow_id=escrow_id,
                reference=payment_reference,
            )
            raise PaymentNotConfirmedError(
                payment_reference, f"reference was not issued for escrow {escrow_id}"
            )

        verification = await self._payments.verify_payment(payment_reference)
        if not verification.success:
            raise PaymentNotConfirmedError(
                payment_reference, verification.gateway_response or "payment not successful"
            )

        fees = compute_fees(escrow.amount, escrow.currency, buyer.tier)
        if verification.currency.upper() != escrow.currency.value:
            raise PaymentNotConfirmedError(
                payment_reference,
                f"paid in {verification.currency}, escrow is in {escrow.currency.value}",
            )
        if verification.amount_paid < fees.buyer_pays:
            raise PaymentNotConfirmedError(
                payment_reference,
                f"paid {verification.amount_paid}, expected {fees.buyer_pays}",
            )

        now = self._clock()
        snapshot = PaymentSnapshot(
            fees=fees,
            reference=payment_reference,
            payment_method=_parse_choice(PaymentMethod, payment_method, "payment method"),
            amount_paid=verification.amount_paid,
            paid_at=now,
        )
        try:
            escrow.record_payment(snapshot)
        except InvariantViolationError:
            logger.error(
                "escrow.invariant_violation",
                escrow_id=escrow_id,
                status=escrow.status.value,
                existing_reference=escrow.payment.reference if escrow.payment else None,
                attempted_reference=payment_reference,
            )
            raise

        return await self._transition(
            escrow,
            EscrowEvent.BUYER_FUNDS,
            actor_id,
            ParticipantRole.BUYER,
            note=f"Paid via {snapshot.payment_method.value} ({payment_reference})",
            now=now,
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def submit_delivery(
        self,
        escrow_id: str,
        actor_id: str,
        proof: DeliveryProof,
        expected_version: int | None = None,
    ) -> Escrow:
        """Seller submits delivery proof: funded -> delivered."""
        escrow = await self._load(escrow_id, expected_version)
        self._require_party(escrow, actor_id, ParticipantRole.SELLER, "deliver this escrow")
        validate_transition(escrow.status, EscrowEvent.SELLER_DELIVERS)

        now = self._clock()
        escrow.record_delivery(replace(proof, submitted_at=now), now)
        return await self._transition(
            escrow,
            EscrowEvent.SELLER_DELIVERS,
            actor_id,
            ParticipantRole.SELLER,
            note=proof.description,
            now=now,
        )

    async def confirm_delivery(
        self, escrow_id: str, actor_id: str, expected_version: int | None = None
    ) -> Escrow:
        """Buyer confirms receipt: delivered -> completed."""
        escrow = await self._load(escrow_id, expected_version)
        self._require_party(escrow, actor_id, ParticipantRole.BUYER, "confirm this delivery")
        validate_transition(escrow.status, EscrowEvent.BUYER_CONFIRMS)

        now = self._clock()
        escrow.delivery = replace(escrow.delivery, confirmed_at=now)
        return await self._transition(
            escrow, EscrowEvent.BUYER_CONFIRMS, actor_id, ParticipantRole.BUYER, now=now
        )

    # ------------------------------------------------------------------
    # Auto-release
    # ------------------------------------------------------------------

    async def release_if_due(self, escrow_id: str, now: datetime | None = None) -> Escrow:
        """Complete a delivered escrow whose auto-release time has passed.

        Idempotent: an escrow that is already completed or paid out is
        returned unchanged.

        Raises:
            AutoReleaseNotDueError: not delivered, disabled, disputed, or not yet due.
        """
        now = now or self._clock()
        escrow = await self._escrows.get(escrow_id)
        if escrow.status in (EscrowStatus.COMPLETED, EscrowStatus.PAID_OUT):
            return escrow
        escrow.check_auto_release_due(now)
        return await self._transition(
            escrow,
            EscrowEvent.AUTO_RELEASE,
            SYSTEM_ACTOR,
            ParticipantRole.SYSTEM,
            note="Auto-released after delivery window",
            now=now,
        )

    async def release_due_escrows(
        self, now: datetime | None = None, limit: int = 100
    ) -> list[Escrow]:
        """Release every escrow that is due. Lost races are skipped, not retried."""
        now = now or self._clock()
        released: list[Escrow] = []
        for candidate in await self._escrows.list_due_for_release(now, limit):
            try:
                escrow = await self.release_if_due(candidate.escrow_id, now)
            except (ConcurrentModificationError, AutoReleaseNotDueError) as exc:
                logger.info(
                    "escrow.auto_release_skipped",
                    escrow_id=candidate.escrow_id,
                    reason=exc.message,
                )
                continue
            released.append(escrow)
        logger.info("escrow.auto_release_sweep", scanned_at=now.isoformat(), released=len(released))
        return released

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def request_payout(self, escrow_id: str) -> str:
        """First phase of payout: start the gateway transfer to the seller.

        Records the transfer reference on the escrow; calling again for the
        same escrow returns the recorded reference.
        """
        escrow = await self._escrows.get(escrow_id)
        validate_transition(escrow.status, EscrowEvent.PAYOUT_EXECUTED)
        if escrow.payout_reference:
            return escrow.payout_reference

        if escrow.payment is None:
            logger.error(
                "escrow.invariant_violation",
                escrow_id=escrow_id,
                status=escrow.status.value,
                detail="completed escrow has no payment snapshot",
            )
            raise InvariantViolationError(f"Escrow {escrow_id} completed without a payment")

        seller = await self._users.get(escrow.seller_id)
        decision = can_receive_payouts(seller)
        if not decision:
            _raise_denied(decision)

        amount = (
            escrow.settlement.release_to_seller
            if escrow.settlement is not None
            else escrow.payment.fees.seller_receives
        )
        destination = next(d for d in seller.payout_destinations if d.verified)
        reference = await self._payouts.initiate_transfer(
            amount, escrow.currency.value, destination.destination_id, f"PAYOUT-{escrow_id}"
        )

        read_version = escrow.version
        escrow.payout_reference = reference
        escrow.updated_at = self._clock()
        await self._escrows.save(escrow, read_version)
        logger.info(
            "escrow.payout_requested",
            escrow_id=escrow_id,
            reference=reference,
            amount=str(amount),
        )
        return reference

    async def confirm_payout(
        self, escrow_id: str, reference: str, expected_version: int | None = None
    ) -> Escrow:
        """Second phase of payout: completed -> paid_out once the transfer succeeds."""
        escrow = await self._load(escrow_id, expected_version)
        validate_transition(escrow.status, EscrowEvent.PAYOUT_EXECUTED)
        if escrow.payout_reference != reference:
            raise PaymentNotConfirmedError(reference, "unknown payout reference")

        result = await self._payouts.verify_transfer(reference)
        if not result.success:
            raise PaymentNotConfirmedError(reference, result.status or "transfer not successful")

        return await self._transition(
            escrow,
            EscrowEvent.PAYOUT_EXECUTED,
            SYSTEM_ACTOR,
            ParticipantRole.SYSTEM,
            note=f"Payout {reference}",
        )

    # ------------------------------------------------------------------
    # Cancellation & disputes
    # ------------------------------------------------------------------

    async def cancel_escrow(
        self,
        escrow_id: str,
        actor_id: str,
        reason: str = "",
        expected_version: int | None = None,
    ) -> Escrow:
        """Either party cancels before delivery. A funded escrow is refunded in full."""
        escrow = await self._load(escrow_id, expected_version)
        role = self._require_participant(escrow, actor_id, "cancel this escrow")
        validate_transition(escrow.status, EscrowEvent.CANCEL)

        now = self._clock()
        if escrow.payment is not None:
            escrow.settlement = Settlement(
                refund_to_buyer=escrow.payment.fees.buyer_pays,
                release_to_seller=Decimal("0.00"),
                decided_at=now,
                reason=reason or "cancelled",
            )
        return await self._transition(
            escrow, EscrowEvent.CANCEL, actor_id, role, note=reason, now=now
        )

    async def raise_dispute(
        self,
        escrow_id: str,
        actor_id: str,
        reason: str,
        evidence: Iterable[str] = (),
        dispute_type: DisputeType | str = DisputeType.OTHER,
        expected_version: int | None = None,
    ) -> Escrow:
        """Either party disputes a funded or delivered escrow.

        The dispute record is stored before the escrow moves, so the notice
        sent on the transition always points at a dispute that exists. If
        the escrow write loses a race the new dispute is dismissed.

        Raises:
            DisputeAlreadyRaisedError: the escrow already carries a dispute.
        """
        escrow = await self._load(escrow_id, expected_version)
        role = self._require_participant(escrow, actor_id, "dispute this escrow")
        if escrow.dispute.is_disputed:
            raise DisputeAlreadyRaisedError(escrow_id)
        validate_transition(escrow.status, EscrowEvent.RAISE_DISPUTE)

        now = self._clock()
        evidence = tuple(evidence)
        dispute = Dispute.open(
            escrow_id=escrow.escrow_id,
            reported_by=actor_id,
            reported_user=escrow.counterparty_of(actor_id),
            reporter_role=role,
            dispute_type=_parse_choice(DisputeType, dispute_type, "dispute type"),
            description=reason,
            evidence=evidence,
            now=now,
        )
        escrow.dispute = DisputeInfo(
            is_disputed=True,
            dispute_id=dispute.dispute_id,
            raised_by=actor_id,
            reason=reason,
            evidence=evidence,
            status=DisputeStatus.OPEN,
            raised_at=now,
        )
        dispute = await self._disputes.add(dispute)
        try:
            escrow = await self._transition(
                escrow, EscrowEvent.RAISE_DISPUTE, actor_id, role, note=reason, now=now
            )
        except ConcurrentModificationError:
            dismiss(dispute, actor_id, now, "escrow changed before the dispute was raised")
            await self._disputes.save(dispute, dispute.version)
            logger.warning(
                "dispute.raise_conflict", escrow_id=escrow_id, dispute_id=dispute.dispute_id
            )
            raise
        logger.info(
            "dispute.raised",
            escrow_id=escrow_id,
            dispute_id=dispute.dispute_id,
            reported_by=actor_id,
            dispute_type=dispute.dispute_type.value,
        )
        return escrow

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: str) -> Escrow:
        return await self._escrows.get(escrow_id)

    async def get_status(self, escrow_id: str) -> dict:
        """Get escrow status with allowed events."""
        escrow = await self._escrows.get(escrow_id)
        return {
            "escrow_id": escrow.escrow_id,
            "status": escrow.status.value,
            "version": escrow.version,
            "chat_unlocked": escrow.chat_unlocked,
            "allowed_events": allowed_events(escrow.status),
        }

    async def get_timeline(self, escrow_id: str) -> list[TimelineEntry]:
        escrow = await self._escrows.get(escrow_id)
        return list(escrow.timeline)

    async def list_escrows(self, user_id: str) -> list[Escrow]:
        return await self._escrows.list_for_user(user_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _load(self, escrow_id: str, expected_version: int | None) -> Escrow:
        escrow = await self._escrows.get(escrow_id)
        if expected_version is not None and escrow.version != expected_version:
            raise ConcurrentModificationError(escrow_id, expected_version)
        return escrow

    def _require_party(
        self, escrow: Escrow, actor_id: str, role: ParticipantRole, action: str
    ) -> None:
        if escrow.role_of(actor_id) != role:
            raise PermissionDeniedError(actor_id, action)

    def _require_participant(self, escrow: Escrow, actor_id: str, action: str) -> ParticipantRole:
        role = escrow.role_of(actor_id)
        if role is None:
            raise PermissionDeniedError(actor_id, action)
        return role

    async def _transition(
        self,
        escrow: Escrow,
        event: EscrowEvent,
        actor_id: str,
        actor_role: ParticipantRole,
        note: str = "",
        now: datetime | None = None,
    ) -> Escrow:
        """Apply `event`, write conditionally on the version read, then notify."""
        read_version = escrow.version
        previous = escrow.status
        now = now or self._clock()
        escrow.apply(event, actor_id=actor_id, actor_role=actor_role, now=now, note=note)
        saved = await self._escrows.save(escrow, read_version)

        logger.info(
            "escrow.transition",
            escrow_id=saved.escrow_id,
            transition=event.value,
            from_status=previous.value,
            to_status=saved.status.value,
            actor_id=actor_id,
            version=saved.version,
        )
        self._notifications.dispatch(
            TransitionNotice(
                escrow_id=saved.escrow_id,
                event=event,
                status=saved.status,
                actor_id=actor_id,
                recipients=(saved.buyer_id, saved.seller_id),
                occurred_at=now,
                note=note,
            )
        )
        return saved
