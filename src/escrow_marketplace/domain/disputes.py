"""Dispute Resolution Sub-flow.

A Dispute is its own record, linked to the escrow it was raised on. Admins
assign and resolve it; resolution decides how the escrowed funds settle and
which state-machine event resolves the parent escrow:

    full refund to the buyer       -> resolve_refund  (escrow cancelled)
    anything released to seller    -> resolve_release (escrow completed)
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from escrow_marketplace.domain.enums import (
    AdminPermission,
    AdminRole,
    Currency,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    DisputeWinner,
    EscrowEvent,
    ParticipantRole,
)
from escrow_marketplace.domain.exceptions import (
    AlreadyResolvedError,
    PermissionDeniedError,
    ValidationError,
)
from escrow_marketplace.domain.fees import HUNDRED, percent_of
from escrow_marketplace.domain.models import parse_timestamp
from escrow_marketplace.domain.tiers import to_decimal

OPEN_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


def generate_dispute_id(now: datetime) -> str:
    """``DSP`` + last 6 digits of epoch milliseconds + 4 random digits."""
    millis = str(int(now.timestamp() * 1000))
    return f"DSP{millis[-6:]}{secrets.randbelow(10_000):04d}"


def clamp_percentage(value: Decimal | int | str | None) -> Decimal:
    if value is None:
        return HUNDRED
    return max(Decimal("0"), min(HUNDRED, to_decimal(value)))


@dataclass(frozen=True)
class AdminProfile:
    """An administrator. `master` implies every permission."""

    admin_id: str
    role: AdminRole = AdminRole.SUB_ADMIN
    permissions: frozenset[AdminPermission] = frozenset()
    is_active: bool = True

    def has(self, permission: AdminPermission) -> bool:
        if not self.is_active:
            return False
        return self.role == AdminRole.MASTER or permission in self.permissions


@dataclass(frozen=True)
class DisputeHistoryEntry:
    action: str
    actor_id: str
    note: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "actor_id": self.actor_id,
            "note": self.note,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DisputeHistoryEntry:
        return cls(
            action=data["action"],
            actor_id=data["actor_id"],
            note=data.get("note", ""),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class Dispute:
    """A dispute raised by one escrow participant against the other."""

    id: uuid.UUID
    dispute_id: str
    escrow_id: str
    reported_by: str
    reported_user: str
    reporter_role: ParticipantRole
    dispute_type: DisputeType
    description: str
    created_at: datetime
    updated_at: datetime
    evidence: tuple[str, ...] = ()
    status: DisputeStatus = DisputeStatus.OPEN
    assigned_to: str | None = None
    assigned_at: datetime | None = None
    resolution: DisputeResolution | None = None
    winner: DisputeWinner | None = None
    refund_percentage: Decimal | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str = ""
    history: tuple[DisputeHistoryEntry, ...] = field(default=())
    version: int = 0

    @classmethod
    def open(
        cls,
        *,
        escrow_id: str,
        reported_by: str,
        reported_user: str,
        reporter_role: ParticipantRole,
        dispute_type: DisputeType,
        description: str,
        evidence: tuple[str, ...],
        now: datetime,
    ) -> Dispute:
        dispute = cls(
            id=uuid.uuid4(),
            dispute_id=generate_dispute_id(now),
            escrow_id=escrow_id,
            reported_by=reported_by,
            reported_user=reported_user,
            reporter_role=reporter_role,
            dispute_type=dispute_type,
            description=description,
            evidence=evidence,
            created_at=now,
            updated_at=now,
        )
        dispute._log("opened", reported_by, description, now)
        return dispute

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def _log(self, action: str, actor_id: str, note: str, now: datetime) -> None:
        self.history = (*self.history, DisputeHistoryEntry(action, actor_id, note, now))
        self.updated_at = now

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "dispute_id": self.dispute_id,
            "escrow_id": self.escrow_id,
            "reported_by": self.reported_by,
            "reported_user": self.reported_user,
            "reporter_role": self.reporter_role.value,
            "dispute_type": self.dispute_type.value,
            "description": self.description,
            "evidence": list(self.evidence),
            "status": self.status.value,
            "assigned_to": self.assigned_to,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "resolution": self.resolution.value if self.resolution else None,
            "winner": self.winner.value if self.winner else None,
            "refund_percentage": (
                str(self.refund_percentage) if self.refund_percentage is not None else None
            ),
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_notes": self.resolution_notes,
            "history": [entry.to_dict() for entry in self.history],
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def _require_manager(admin: AdminProfile, action: str) -> None:
    if not admin.has(AdminPermission.MANAGE_DISPUTES):
        raise PermissionDeniedError(admin.admin_id, action)


def assign(dispute: Dispute, admin: AdminProfile, now: datetime) -> Dispute:
    """Assign `dispute` to `admin` and move it under review.

    Reassigning an open or under-review dispute is allowed.

    Raises:
        PermissionDeniedError: admin lacks manage_disputes.
        AlreadyResolvedError: the dispute is no longer open.
    """
    _require_manager(admin, "assign disputes")
    if not dispute.is_open:
        raise AlreadyResolvedError(dispute.dispute_id)
    previous = dispute.assigned_to
    dispute.status = DisputeStatus.UNDER_REVIEW
    dispute.assigned_to = admin.admin_id
    dispute.assigned_at = now
    note = f"reassigned from {previous}" if previous and previous != admin.admin_id else ""
    dispute._log("assigned", admin.admin_id, note, now)
    return dispute


def resolve(
    dispute: Dispute,
    admin: AdminProfile,
    *,
    resolution: DisputeResolution,
    winner: DisputeWinner,
    now: datetime,
    refund_percentage: Decimal | int | str | None = None,
    notes: str = "",
) -> Dispute:
    """Record the admin's decision and mark the dispute resolved.

    `refund_percentage` defaults to 100 and is clamped to [0, 100].

    Raises:
        PermissionDeniedError: admin lacks manage_disputes.
        AlreadyResolvedError: the dispute is not open or under review.
    """
    _require_manager(admin, "resolve disputes")
    if not dispute.is_open:
        raise AlreadyResolvedError(dispute.dispute_id)
    dispute.status = DisputeStatus.RESOLVED
    dispute.resolution = resolution
    dispute.winner = winner
    dispute.refund_percentage = clamp_percentage(refund_percentage)
    dispute.resolved_by = admin.admin_id
    dispute.resolved_at = now
    dispute.resolution_notes = notes
    dispute._log("resolved", admin.admin_id, f"{resolution.value}: {winner.value}", now)
    return dispute


def dismiss(dispute: Dispute, actor_id: str, now: datetime, note: str = "") -> Dispute:
    """Close an open dispute without a ruling."""
    if not dispute.is_open:
        raise AlreadyResolvedError(dispute.dispute_id)
    dispute.status = DisputeStatus.DISMISSED
    dispute._log("dismissed", actor_id, note, now)
    return dispute


@dataclass(frozen=True)
class DisputeSettlement:
    refund_to_buyer: Decimal
    release_to_seller: Decimal
    event: EscrowEvent

    @property
    def is_full_refund(self) -> bool:
        return self.event == EscrowEvent.RESOLVE_REFUND


def settle_dispute(
    *,
    amount: Decimal,
    winner: DisputeWinner,
    reporter_role: ParticipantRole,
    refund_percentage: Decimal | int | str | None = None,
    buyer_pays: Decimal | None = None,
    currency: Currency = Currency.USD,
) -> DisputeSettlement:
    """Split the escrowed `amount` according to the ruling.

    `reportedBy`/`reportedUser` name a party relative to whoever raised the
    dispute. `split` and `refund` refund the clamped percentage of the amount
    to the buyer and release the rest. A full refund returns `buyer_pays`
    (amount plus the buyer's fee) when it is known.
    """
    if reporter_role not in (ParticipantRole.BUYER, ParticipantRole.SELLER):
        raise ValidationError(f"Disputes are raised by a buyer or seller, not {reporter_role}")

    if winner in (DisputeWinner.REPORTED_BY, DisputeWinner.REPORTED_USER):
        buyer_wins = (winner == DisputeWinner.REPORTED_BY) == (
            reporter_role == ParticipantRole.BUYER
        )
        percent = HUNDRED if buyer_wins else Decimal("0")
    else:
        percent = clamp_percentage(refund_percentage)

    refund = percent_of(amount, percent, currency)
    release = amount - refund
    if release == 0:
        return DisputeSettlement(
            refund_to_buyer=buyer_pays if buyer_pays is not None else amount,
            release_to_seller=Decimal("0.00"),
            event=EscrowEvent.RESOLVE_REFUND,
        )
    return DisputeSettlement(
        refund_to_buyer=refund,
        release_to_seller=release,
        event=EscrowEvent.RESOLVE_RELEASE,
    )
