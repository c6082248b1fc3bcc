"""SQLAlchemy 2.0 ORM models for the Escrow Marketplace.

Tables:
    1. users                — read-only to the escrow core (verification fields, usage).
    2. payout_destinations  — a user's bank accounts / wallets for payouts.
    3. admins               — dispute handlers and their permissions.
    4. escrows              — the escrow aggregate; `version` backs compare-and-swap.
    5. escrow_timeline      — append-only, ordered status log keyed by escrow.
    6. disputes             — dispute records linked to an escrow.

Design decisions:
    - Generic Uuid / JSON types so the same models run on PostgreSQL (JSONB)
      and SQLite (tests, local dry runs).
    - Numeric for money (no floating point rounding errors).
    - CHECK constraints on status, amount and party distinctness.
    - escrow_id carries a true UNIQUE constraint; its random suffix is not
      trusted for uniqueness.
    - escrow_timeline is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable  # noqa: TC003
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]
from enum import StrEnum  # noqa: TC003

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from escrow_marketplace.domain.enums import (
    DisputeStatus,
    EscrowStatus,
    KycStatus,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _in_list(column: str, values: Iterable[StrEnum]) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. users
# ---------------------------------------------------------------------------
class UserRow(Base):
    """A marketplace account, as far as the escrow core needs to see it."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    kyc_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=KycStatus.UNVERIFIED.value,
        comment="Single canonical KYC status; is_kyc_verified is derived on read",
    )
    account_status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    can_create_escrow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # --- Monthly usage (reset derived on read from usage_reset_month) ---
    monthly_transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_reset_month: Mapped[str] = mapped_column(String(7), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_list("kyc_status", KycStatus), name="ck_user_kyc_status"),
        CheckConstraint(
            "account_status IN ('active', 'suspended', 'deleted')",
            name="ck_user_account_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<UserRow id={self.id} tier={self.tier} kyc={self.kyc_status}>"


# ---------------------------------------------------------------------------
# 2. payout_destinations
# ---------------------------------------------------------------------------
class PayoutDestinationRow(Base):
    __tablename__ = "payout_destinations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    account_last4: Mapped[str] = mapped_column(String(4), nullable=False, default="")

    __table_args__ = (Index("idx_payout_destination_user", "user_id"),)


# ---------------------------------------------------------------------------
# 3. admins
# ---------------------------------------------------------------------------
class AdminRow(Base):
    __tablename__ = "admins"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="sub_admin")
    permissions: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("role IN ('master', 'sub_admin')", name="ck_admin_role"),
    )


# ---------------------------------------------------------------------------
# 4. escrows
# ---------------------------------------------------------------------------
class EscrowRow(Base):
    """An escrow agreement between a buyer and a seller."""

    __tablename__ = "escrows"

    # --- Identity ---
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Human-facing id (ESC + ms timestamp + 3 random digits)",
    )

    # --- Agreement ---
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(
        Numeric(28, 8), nullable=False, comment="Exact, at the currency's scale (8 dp max)"
    )
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)

    # --- Status (guarded by EscrowStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EscrowStatus.PENDING.value
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency counter, advanced on every write",
    )

    # --- Sub-records ---
    payment: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, default=None, comment="Write-once fee snapshot"
    )
    payment_reference: Mapped[str | None] = mapped_column(
        String(100), nullable=True, comment="Gateway reference from the payment snapshot"
    )
    delivery: Mapped[dict] = mapped_column(JSONType, nullable=False)
    dispute: Mapped[dict] = mapped_column(JSONType, nullable=False)
    settlement: Mapped[dict | None] = mapped_column(JSONType, nullable=True, default=None)
    payout_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # --- Denormalized for the auto-release scan ---
    auto_release_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    dispute_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("escrow_id", name="uq_escrow_escrow_id"),
        UniqueConstraint("payment_reference", name="uq_escrow_payment_reference"),
        CheckConstraint(_in_list("status", EscrowStatus), name="ck_escrow_valid_status"),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        CheckConstraint("buyer_id <> seller_id", name="ck_escrow_distinct_parties"),
        CheckConstraint("version >= 1", name="ck_escrow_version"),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_buyer", "buyer_id"),
        Index("idx_escrow_seller", "seller_id"),
        Index("idx_escrow_auto_release", "status", "auto_release_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowRow escrow_id={self.escrow_id} status={self.status} "
            f"amount={self.amount} {self.currency} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# 5. escrow_timeline (Append-Only)
# ---------------------------------------------------------------------------
class TimelineRow(Base):
    """One status change of an escrow. APPEND-ONLY: rows are never updated or deleted."""

    __tablename__ = "escrow_timeline"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escrow_pk: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrows.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="0-based position in the escrow's timeline"
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(16), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("escrow_pk", "seq", name="uq_timeline_escrow_seq"),
        Index("idx_timeline_escrow", "escrow_pk"),
    )

    def __repr__(self) -> str:
        return f"<TimelineRow escrow={self.escrow_pk} #{self.seq} {self.status}>"


# ---------------------------------------------------------------------------
# 6. disputes
# ---------------------------------------------------------------------------
class DisputeRow(Base):
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    escrow_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("escrows.escrow_id"), nullable=False
    )

    reported_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reported_user: Mapped[str] = mapped_column(String(64), nullable=False)
    reporter_role: Mapped[str] = mapped_column(String(16), nullable=False)
    dispute_type: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DisputeStatus.OPEN.value
    )
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    winner: Mapped[str | None] = mapped_column(String(16), nullable=True)
    refund_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    history: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_list("status", DisputeStatus), name="ck_dispute_status"),
        CheckConstraint(
            "refund_percentage IS NULL OR (refund_percentage >= 0 AND refund_percentage <= 100)",
            name="ck_dispute_refund_percentage",
        ),
        Index("idx_dispute_escrow", "escrow_id"),
        Index("idx_dispute_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<DisputeRow dispute_id={self.dispute_id} status={self.status}>"
