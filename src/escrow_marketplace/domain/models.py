"""Escrow Aggregate.

The Escrow is the aggregate root. Its status only changes through `apply`,
which validates the event against the state machine before touching any
field; a rejected event leaves the escrow exactly as it was.

Invariants held here:
    - buyer and seller are distinct
    - amount is strictly positive, currency is supported
    - the timeline is an append-only tuple, one entry per status change
    - the payment snapshot is written once
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import MappingProxyType

from escrow_marketplace.domain.enums import (
    Currency,
    DeliveryMethod,
    DisputeResolution,
    DisputeStatus,
    EscrowEvent,
    EscrowStatus,
    ParticipantRole,
    PaymentMethod,
    ProofType,
)
from escrow_marketplace.domain.exceptions import (
    AutoReleaseNotDueError,
    DeliveryProofMismatchError,
    InvalidParticipantsError,
    PaymentAlreadyRecordedError,
    ValidationError,
)
from escrow_marketplace.domain.fees import FeeBreakdown, parse_amount
from escrow_marketplace.domain.state_machine import TERMINAL_STATUSES, validate_transition
from escrow_marketplace.domain.tiers import parse_currency

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
DEFAULT_AUTO_RELEASE_DAYS = 7

PROOF_TYPES_BY_METHOD = MappingProxyType(
    {
        DeliveryMethod.PHYSICAL: frozenset(
            {ProofType.TRACKING_NUMBER, ProofType.COURIER_RECEIPT, ProofType.PHOTO}
        ),
        DeliveryMethod.DIGITAL: frozenset(
            {ProofType.DOWNLOAD_LINK, ProofType.FILE, ProofType.SCREENSHOT}
        ),
        DeliveryMethod.SERVICE: frozenset(
            {ProofType.COMPLETION_REPORT, ProofType.PHOTO, ProofType.SIGNED_ACCEPTANCE}
        ),
        DeliveryMethod.IN_PERSON: frozenset({ProofType.SIGNED_ACCEPTANCE, ProofType.PHOTO}),
        DeliveryMethod.CRYPTO: frozenset({ProofType.TRANSACTION_HASH}),
    }
)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Decode an ISO timestamp, treating naive values as UTC."""
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def generate_escrow_id(now: datetime) -> str:
    """Human-facing id: ``ESC`` + epoch milliseconds + 3 random digits.

    Uniqueness is enforced by the store, not by this scheme.
    """
    millis = int(now.timestamp() * 1000)
    return f"ESC{millis}{secrets.randbelow(1000):03d}"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimelineEntry:
    """One status change in the escrow's audit trail."""

    status: EscrowStatus
    actor_id: str
    actor_role: ParticipantRole
    note: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "note": self.note,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PaymentSnapshot:
    """Fee breakdown frozen at funding time plus the confirmed gateway payment.

    Later tier changes never alter an already-funded escrow.
    """

    fees: FeeBreakdown
    reference: str
    payment_method: PaymentMethod
    amount_paid: Decimal
    paid_at: datetime

    def to_dict(self) -> dict:
        return {
            **self.fees.to_dict(),
            "reference": self.reference,
            "payment_method": self.payment_method.value,
            "amount_paid": str(self.amount_paid),
            "paid_at": self.paid_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> PaymentSnapshot:
        return cls(
            fees=FeeBreakdown.from_dict(data),
            reference=data["reference"],
            payment_method=PaymentMethod(data["payment_method"]),
            amount_paid=Decimal(data["amount_paid"]),
            paid_at=parse_timestamp(data["paid_at"]),
        )


@dataclass(frozen=True)
class DeliveryProof:
    proof_type: ProofType
    value: str
    description: str = ""
    submitted_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "proof_type": self.proof_type.value,
            "value": self.value,
            "description": self.description,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeliveryProof:
        return cls(
            proof_type=ProofType(data["proof_type"]),
            value=data["value"],
            description=data.get("description", ""),
            submitted_at=parse_timestamp(data.get("submitted_at")),
        )


@dataclass(frozen=True)
class Delivery:
    """Delivery settings chosen at creation plus the seller's submitted proof."""

    method: DeliveryMethod = DeliveryMethod.DIGITAL
    auto_release_enabled: bool = True
    auto_release_days: int = DEFAULT_AUTO_RELEASE_DAYS
    proofs: tuple[DeliveryProof, ...] = ()
    delivered_at: datetime | None = None
    confirmed_at: datetime | None = None
    auto_release_at: datetime | None = None

    def accepts(self, proof_type: ProofType) -> bool:
        return proof_type in PROOF_TYPES_BY_METHOD[self.method]

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "auto_release_enabled": self.auto_release_enabled,
            "auto_release_days": self.auto_release_days,
            "proofs": [p.to_dict() for p in self.proofs],
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "auto_release_at": self.auto_release_at.isoformat() if self.auto_release_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Delivery:
        return cls(
            method=DeliveryMethod(data["method"]),
            auto_release_enabled=data["auto_release_enabled"],
            auto_release_days=data["auto_release_days"],
            proofs=tuple(DeliveryProof.from_dict(p) for p in data.get("proofs", [])),
            delivered_at=parse_timestamp(data.get("delivered_at")),
            confirmed_at=parse_timestamp(data.get("confirmed_at")),
            auto_release_at=parse_timestamp(data.get("auto_release_at")),
        )


@dataclass(frozen=True)
class DisputeInfo:
    """Dispute sub-record embedded on the escrow. The full record lives in Dispute."""

    is_disputed: bool = False
    dispute_id: str | None = None
    raised_by: str | None = None
    reason: str = ""
    evidence: tuple[str, ...] = ()
    status: DisputeStatus | None = None
    resolution: DisputeResolution | None = None
    raised_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.is_disputed and self.status != DisputeStatus.RESOLVED

    def to_dict(self) -> dict:
        return {
            "is_disputed": self.is_disputed,
            "dispute_id": self.dispute_id,
            "raised_by": self.raised_by,
            "reason": self.reason,
            "evidence": list(self.evidence),
            "status": self.status.value if self.status else None,
            "resolution": self.resolution.value if self.resolution else None,
            "raised_at": self.raised_at.isoformat() if self.raised_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DisputeInfo:
        return cls(
            is_disputed=data.get("is_disputed", False),
            dispute_id=data.get("dispute_id"),
            raised_by=data.get("raised_by"),
            reason=data.get("reason", ""),
            evidence=tuple(data.get("evidence", [])),
            status=DisputeStatus(data["status"]) if data.get("status") else None,
            resolution=DisputeResolution(data["resolution"]) if data.get("resolution") else None,
            raised_at=parse_timestamp(data.get("raised_at")),
        )


@dataclass(frozen=True)
class Settlement:
    """Where the escrowed funds go once a cancellation or dispute is decided."""

    refund_to_buyer: Decimal
    release_to_seller: Decimal
    decided_at: datetime
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "refund_to_buyer": str(self.refund_to_buyer),
            "release_to_seller": str(self.release_to_seller),
            "decided_at": self.decided_at.isoformat(),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Settlement:
        return cls(
            refund_to_buyer=Decimal(data["refund_to_buyer"]),
            release_to_seller=Decimal(data["release_to_seller"]),
            decided_at=parse_timestamp(data["decided_at"]),
            reason=data.get("reason", ""),
        )


# ---------------------------------------------------------------------------
# Aggregate root
# ---------------------------------------------------------------------------


@dataclass
class Escrow:
    """An escrow agreement between a buyer and a seller.

    `version` advances on every persisted write and backs the stores'
    compare-and-swap.
    """

    id: uuid.UUID
    escrow_id: str
    title: str
    description: str
    amount: Decimal
    currency: Currency
    buyer_id: str
    seller_id: str
    created_at: datetime
    updated_at: datetime
    status: EscrowStatus = EscrowStatus.PENDING
    timeline: tuple[TimelineEntry, ...] = ()
    payment: PaymentSnapshot | None = None
    delivery: Delivery = field(default_factory=Delivery)
    dispute: DisputeInfo = field(default_factory=DisputeInfo)
    settlement: Settlement | None = None
    payout_reference: str | None = None
    version: int = 0

    @classmethod
    def create(
        cls,
        *,
        escrow_id: str,
        title: str,
        description: str,
        amount: Decimal | str | int,
        currency: str | Currency,
        buyer_id: str,
        seller_id: str,
        now: datetime,
        delivery: Delivery | None = None,
    ) -> Escrow:
        """Build a new pending escrow, validating every creation invariant.

        Raises:
            InvalidParticipantsError: buyer and seller are the same account.
            InvalidAmountError, UnsupportedCurrencyError, ValidationError.
        """
        if buyer_id == seller_id:
            raise InvalidParticipantsError("Buyer and seller must be different accounts")
        title = title.strip()
        if not title or len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Title must be 1-{TITLE_MAX_LENGTH} characters")
        if len(description) > DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters"
            )
        delivery = delivery or Delivery()
        if delivery.auto_release_days < 1:
            raise ValidationError("Auto-release days must be at least 1")
        code = parse_currency(currency)
        return cls(
            id=uuid.uuid4(),
            escrow_id=escrow_id,
            title=title,
            description=description,
            amount=parse_amount(amount, code),
            currency=code,
            buyer_id=buyer_id,
            seller_id=seller_id,
            created_at=now,
            updated_at=now,
            delivery=delivery,
        )

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def chat_unlocked(self) -> bool:
        return self.payment is not None

    @property
    def is_final(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def role_of(self, user_id: str) -> ParticipantRole | None:
        if user_id == self.buyer_id:
            return ParticipantRole.BUYER
        if user_id == self.seller_id:
            return ParticipantRole.SELLER
        return None

    def counterparty_of(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def check_auto_release_due(self, now: datetime) -> None:
        """Raise AutoReleaseNotDueError unless the delivered escrow may auto-release."""
        if self.status != EscrowStatus.DELIVERED:
            raise AutoReleaseNotDueError(self.escrow_id, f"status is {self.status.value}")
        if not self.delivery.auto_release_enabled:
            raise AutoReleaseNotDueError(self.escrow_id, "auto-release disabled")
        if self.dispute.is_open:
            raise AutoReleaseNotDueError(self.escrow_id, "dispute is open")
        due = self.delivery.auto_release_at
        if due is None or now < due:
            raise AutoReleaseNotDueError(self.escrow_id, f"due at {due}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply(
        self,
        event: EscrowEvent,
        *,
        actor_id: str,
        actor_role: ParticipantRole,
        now: datetime,
        note: str = "",
    ) -> EscrowStatus:
        """Fire `event` and append exactly one timeline entry.

        Raises:
            InvalidStateTransitionError: `event` is illegal from the current status.
        """
        new_status = validate_transition(self.status.value, event.value)
        self.status = new_status
        self.timeline = (
            *self.timeline,
            TimelineEntry(
                status=new_status,
                actor_id=actor_id,
                actor_role=actor_role,
                note=note,
                timestamp=now,
            ),
        )
        self.updated_at = now
        return new_status

    def record_payment(self, snapshot: PaymentSnapshot) -> None:
        if self.payment is not None:
            raise PaymentAlreadyRecordedError(self.escrow_id)
        self.payment = snapshot

    def record_delivery(self, proof: DeliveryProof, now: datetime) -> None:
        if not self.delivery.accepts(proof.proof_type):
            raise DeliveryProofMismatchError(self.delivery.method.value, proof.proof_type.value)
        auto_release_at = None
        if self.delivery.auto_release_enabled:
            auto_release_at = now + timedelta(days=self.delivery.auto_release_days)
        self.delivery = replace(
            self.delivery,
            proofs=(*self.delivery.proofs, proof),
            delivered_at=now,
            auto_release_at=auto_release_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "escrow_id": self.escrow_id,
            "title": self.title,
            "description": self.description,
            "amount": str(self.amount),
            "currency": self.currency.value,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "status": self.status.value,
            "chat_unlocked": self.chat_unlocked,
            "timeline": [entry.to_dict() for entry in self.timeline],
            "payment": self.payment.to_dict() if self.payment else None,
            "delivery": self.delivery.to_dict(),
            "dispute": self.dispute.to_dict(),
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "payout_reference": self.payout_reference,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
