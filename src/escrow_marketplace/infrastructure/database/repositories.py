"""Repository classes for database access.

Repositories implement the domain store ports on top of an AsyncSession.
They never manage their own transactions (that's the caller's
responsibility): they flush, the request scope commits or rolls back.

Writes to an existing escrow or dispute are conditional UPDATEs on the
version the caller read (`WHERE id = :id AND version = :expected`); zero
affected rows means someone else wrote first.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from escrow_marketplace.domain.disputes import AdminProfile, Dispute, DisputeHistoryEntry
from escrow_marketplace.domain.enums import (
    AccountStatus,
    AdminPermission,
    AdminRole,
    Currency,
    DisputeResolution,
    DisputeStatus,
    DisputeType,
    DisputeWinner,
    EscrowStatus,
    KycStatus,
    ParticipantRole,
    TierId,
)
from escrow_marketplace.domain.exceptions import (
    ConcurrentModificationError,
    DisputeNotFoundError,
    DuplicateEscrowIdError,
    EscrowNotFoundError,
    PaymentReferenceInUseError,
    PermissionDeniedError,
    UserNotFoundError,
)
from escrow_marketplace.domain.models import (
    Delivery,
    DisputeInfo,
    Escrow,
    PaymentSnapshot,
    Settlement,
    TimelineEntry,
    parse_timestamp,
)
from escrow_marketplace.domain.tiers import round_money
from escrow_marketplace.domain.verification import (
    MonthlyUsage,
    PayoutDestination,
    UserProfile,
    month_key,
)
from escrow_marketplace.infrastructure.database.orm_models import (
    AdminRow,
    DisputeRow,
    EscrowRow,
    PayoutDestinationRow,
    TimelineRow,
    UserRow,
)
from escrow_marketplace.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Row <-> domain mapping
# ---------------------------------------------------------------------------


def _escrow_values(escrow: Escrow) -> dict:
    return {
        "escrow_id": escrow.escrow_id,
        "title": escrow.title,
        "description": escrow.description,
        "amount": escrow.amount,
        "currency": escrow.currency.value,
        "buyer_id": escrow.buyer_id,
        "seller_id": escrow.seller_id,
        "status": escrow.status.value,
        "payment": escrow.payment.to_dict() if escrow.payment else None,
        "payment_reference": escrow.payment.reference if escrow.payment else None,
        "delivery": escrow.delivery.to_dict(),
        "dispute": escrow.dispute.to_dict(),
        "settlement": escrow.settlement.to_dict() if escrow.settlement else None,
        "payout_reference": escrow.payout_reference,
        "auto_release_at": escrow.delivery.auto_release_at,
        "dispute_open": escrow.dispute.is_open,
        "created_at": escrow.created_at,
        "updated_at": escrow.updated_at,
    }


def _row_to_escrow(row: EscrowRow, timeline: list[TimelineRow]) -> Escrow:
    return Escrow(
        id=row.id,
        escrow_id=row.escrow_id,
        title=row.title,
        description=row.description,
        amount=round_money(Decimal(row.amount), row.currency),
        currency=Currency(row.currency),
        buyer_id=row.buyer_id,
        seller_id=row.seller_id,
        status=EscrowStatus(row.status),
        timeline=tuple(
            TimelineEntry(
                status=EscrowStatus(entry.status),
                actor_id=entry.actor_id,
                actor_role=ParticipantRole(entry.actor_role),
                note=entry.note,
                timestamp=parse_timestamp(entry.created_at),
            )
            for entry in timeline
        ),
        payment=PaymentSnapshot.from_dict(row.payment) if row.payment else None,
        delivery=Delivery.from_dict(row.delivery),
        dispute=DisputeInfo.from_dict(row.dispute),
        settlement=Settlement.from_dict(row.settlement) if row.settlement else None,
        payout_reference=row.payout_reference,
        version=row.version,
        created_at=parse_timestamp(row.created_at),
        updated_at=parse_timestamp(row.updated_at),
    )


def _dispute_values(dispute: Dispute) -> dict:
    return {
        "dispute_id": dispute.dispute_id,
        "escrow_id": dispute.escrow_id,
        "reported_by": dispute.reported_by,
        "reported_user": dispute.reported_user,
        "reporter_role": dispute.reporter_role.value,
        "dispute_type": dispute.dispute_type.value,
        "description": dispute.description,
        "evidence": list(dispute.evidence),
        "status": dispute.status.value,
        "assigned_to": dispute.assigned_to,
        "assigned_at": dispute.assigned_at,
        "resolution": dispute.resolution.value if dispute.resolution else None,
        "winner": dispute.winner.value if dispute.winner else None,
        "refund_percentage": dispute.refund_percentage,
        "resolved_by": dispute.resolved_by,
        "resolved_at": dispute.resolved_at,
        "resolution_notes": dispute.resolution_notes,
        "history": [entry.to_dict() for entry in dispute.history],
        "created_at": dispute.created_at,
        "updated_at": dispute.updated_at,
    }


def _row_to_dispute(row: DisputeRow) -> Dispute:
    return Dispute(
        id=row.id,
        dispute_id=row.dispute_id,
        escrow_id=row.escrow_id,
        reported_by=row.reported_by,
        reported_user=row.reported_user,
        reporter_role=ParticipantRole(row.reporter_role),
        dispute_type=DisputeType(row.dispute_type),
        description=row.description,
        evidence=tuple(row.evidence or []),
        status=DisputeStatus(row.status),
        assigned_to=row.assigned_to,
        assigned_at=parse_timestamp(row.assigned_at),
        resolution=DisputeResolution(row.resolution) if row.resolution else None,
        winner=DisputeWinner(row.winner) if row.winner else None,
        refund_percentage=(
            Decimal(row.refund_percentage) if row.refund_percentage is not None else None
        ),
        resolved_by=row.resolved_by,
        resolved_at=parse_timestamp(row.resolved_at),
        resolution_notes=row.resolution_notes,
        history=tuple(DisputeHistoryEntry.from_dict(h) for h in row.history or []),
        version=row.version,
        created_at=parse_timestamp(row.created_at),
        updated_at=parse_timestamp(row.updated_at),
    )


# ---------------------------------------------------------------------------
# Escrows
# ---------------------------------------------------------------------------


class EscrowRepository:
    """Data access for escrows and their append-only timeline."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow at version 1."""
        taken = await self._session.scalar(
            select(EscrowRow.id).where(EscrowRow.escrow_id == escrow.escrow_id)
        )
        if taken is not None:
            raise DuplicateEscrowIdError(escrow.escrow_id)

        escrow.version = 1
        self._session.add(EscrowRow(id=escrow.id, version=1, **_escrow_values(escrow)))
        try:
            await self._session.flush()
        except IntegrityError as err:
            if "escrow_id" in str(err.orig):
                raise DuplicateEscrowIdError(escrow.escrow_id) from err
            raise
        await self._append_timeline(escrow, already_persisted=0)
        return escrow

    async def get(self, escrow_id: str) -> Escrow:
        """Fetch an escrow by its human-facing id."""
        row = await self._session.scalar(
            select(EscrowRow)
            .where(EscrowRow.escrow_id == escrow_id)
            .execution_options(populate_existing=True)
        )
        if row is None:
            raise EscrowNotFoundError(escrow_id)
        return _row_to_escrow(row, await self._timeline_rows(row.id))

    async def save(self, escrow: Escrow, expected_version: int) -> Escrow:
        """Conditionally write `escrow` if its stored version is still `expected_version`.

        Raises:
            ConcurrentModificationError: the stored version moved on.
            PaymentReferenceInUseError: the payment snapshot's reference
                already funds another escrow (uq_escrow_payment_reference).
        """
        if escrow.payment is not None:
            funded_elsewhere = await self._session.scalar(
                select(EscrowRow.escrow_id).where(
                    EscrowRow.payment_reference == escrow.payment.reference,
                    EscrowRow.id != escrow.id,
                )
            )
            if funded_elsewhere is not None:
                raise PaymentReferenceInUseError(escrow.payment.reference)

        try:
            result = await self._session.execute(
                update(EscrowRow)
                .where(EscrowRow.id == escrow.id, EscrowRow.version == expected_version)
                .values(**_escrow_values(escrow), version=expected_version + 1)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as err:
            if "payment_reference" in str(err.orig) and escrow.payment is not None:
                raise PaymentReferenceInUseError(escrow.payment.reference) from err
            raise
        if result.rowcount != 1:
            stored = await self._session.scalar(
                select(EscrowRow.version).where(EscrowRow.id == escrow.id)
            )
            if stored is None:
                raise EscrowNotFoundError(escrow.escrow_id)
            logger.info(
                "escrow.cas_conflict",
                escrow_id=escrow.escrow_id,
                expected_version=expected_version,
                stored_version=stored,
            )
            raise ConcurrentModificationError(escrow.escrow_id, expected_version)

        escrow.version = expected_version + 1
        persisted = await self._session.scalar(
            select(func.count()).select_from(TimelineRow).where(TimelineRow.escrow_pk == escrow.id)
        )
        await self._append_timeline(escrow, already_persisted=persisted or 0)
        return escrow

    async def list_due_for_release(self, now: datetime, limit: int = 100) -> list[Escrow]:
        """Delivered escrows whose auto-release time has passed and have no open dispute."""
        result = await self._session.execute(
            select(EscrowRow)
            .where(
                EscrowRow.status == EscrowStatus.DELIVERED.value,
                EscrowRow.auto_release_at.is_not(None),
                EscrowRow.auto_release_at <= now,
                EscrowRow.dispute_open.is_(False),
            )
            .order_by(EscrowRow.auto_release_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars().all())
        return [_row_to_escrow(row, await self._timeline_rows(row.id)) for row in rows]

    async def list_for_user(self, user_id: str) -> list[Escrow]:
        """Fetch all escrows where the user is buyer or seller, newest first."""
        result = await self._session.execute(
            select(EscrowRow)
            .where((EscrowRow.buyer_id == user_id) | (EscrowRow.seller_id == user_id))
            .order_by(EscrowRow.created_at.desc())
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars().all())
        return [_row_to_escrow(row, await self._timeline_rows(row.id)) for row in rows]

    async def _timeline_rows(self, escrow_pk: uuid.UUID) -> list[TimelineRow]:
        result = await self._session.execute(
            select(TimelineRow)
            .where(TimelineRow.escrow_pk == escrow_pk)
            .order_by(TimelineRow.seq.asc())
        )
        return list(result.scalars().all())

    async def _append_timeline(self, escrow: Escrow, already_persisted: int) -> None:
        """Insert timeline entries the database has not seen yet. Never updates."""
        new_entries = escrow.timeline[already_persisted:]
        for offset, entry in enumerate(new_entries):
            self._session.add(
                TimelineRow(
                    escrow_pk=escrow.id,
                    seq=already_persisted + offset,
                    status=entry.status.value,
                    actor_id=entry.actor_id,
                    actor_role=entry.actor_role.value,
                    note=entry.note,
                    created_at=entry.timestamp,
                )
            )
        if new_entries:
            await self._session.flush()


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class DisputeRepository:
    """Data access for dispute records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, dispute: Dispute) -> Dispute:
        dispute.version = 1
        self._session.add(DisputeRow(id=dispute.id, version=1, **_dispute_values(dispute)))
        await self._session.flush()
        return dispute

    async def get(self, dispute_id: str) -> Dispute:
        row = await self._session.scalar(
            select(DisputeRow)
            .where(DisputeRow.dispute_id == dispute_id)
            .execution_options(populate_existing=True)
        )
        if row is None:
            raise DisputeNotFoundError(dispute_id)
        return _row_to_dispute(row)

    async def save(self, dispute: Dispute, expected_version: int) -> Dispute:
        result = await self._session.execute(
            update(DisputeRow)
            .where(DisputeRow.id == dispute.id, DisputeRow.version == expected_version)
            .values(**_dispute_values(dispute), version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            stored = await self._session.scalar(
                select(DisputeRow.version).where(DisputeRow.id == dispute.id)
            )
            if stored is None:
                raise DisputeNotFoundError(dispute.dispute_id)
            raise ConcurrentModificationError(dispute.dispute_id, expected_version)
        dispute.version = expected_version + 1
        return dispute


# ---------------------------------------------------------------------------
# Users & admins
# ---------------------------------------------------------------------------


class UserRepository:
    """Read access to the user fields the escrow core depends on."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, user: UserProfile) -> UserProfile:
        """Insert a user and their payout destinations (seeding and tests)."""
        self._session.add(
            UserRow(
                id=user.user_id,
                email=user.email.lower(),
                full_name=user.full_name,
                email_verified=user.email_verified,
                kyc_status=user.kyc_status.value,
                account_status=user.account_status.value,
                tier=user.tier.value,
                can_create_escrow=user.can_create_escrow,
                monthly_transaction_count=user.monthly_usage.transaction_count,
                usage_reset_month=user.monthly_usage.reset_month,
            )
        )
        for destination in user.payout_destinations:
            self._session.add(
                PayoutDestinationRow(
                    id=destination.destination_id,
                    user_id=user.user_id,
                    verified=destination.verified,
                    bank_name=destination.bank_name,
                    account_last4=destination.account_last4,
                )
            )
        await self._session.flush()
        return user

    async def get(self, user_id: str) -> UserProfile:
        row = await self._session.get(UserRow, user_id, populate_existing=True)
        if row is None:
            raise UserNotFoundError(user_id)
        return await self._to_profile(row)

    async def find_by_email(self, email: str) -> UserProfile | None:
        row = await self._session.scalar(
            select(UserRow)
            .where(func.lower(UserRow.email) == email.strip().lower())
            .execution_options(populate_existing=True)
        )
        if row is None:
            return None
        return await self._to_profile(row)

    async def reserve_transaction(self, user_id: str, now: datetime, limit: int | None) -> bool:
        """Conditional increment; a new month starts the count again at one."""
        month = month_key(now)
        stmt = (
            update(UserRow)
            .where(UserRow.id == user_id)
            .values(
                monthly_transaction_count=case(
                    (
                        UserRow.usage_reset_month == month,
                        UserRow.monthly_transaction_count + 1,
                    ),
                    else_=1,
                ),
                usage_reset_month=month,
            )
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            if limit <= 0:
                await self.get(user_id)
                return False
            stmt = stmt.where(
                or_(
                    UserRow.usage_reset_month != month,
                    UserRow.monthly_transaction_count < limit,
                )
            )
        result = await self._session.execute(stmt)
        if result.rowcount == 1:
            return True
        if await self._session.get(UserRow, user_id) is None:
            raise UserNotFoundError(user_id)
        return False

    async def release_transaction(self, user_id: str, now: datetime) -> None:
        await self._session.execute(
            update(UserRow)
            .where(
                UserRow.id == user_id,
                UserRow.usage_reset_month == month_key(now),
                UserRow.monthly_transaction_count > 0,
            )
            .values(monthly_transaction_count=UserRow.monthly_transaction_count - 1)
            .execution_options(synchronize_session=False)
        )

    async def _to_profile(self, row: UserRow) -> UserProfile:
        result = await self._session.execute(
            select(PayoutDestinationRow).where(PayoutDestinationRow.user_id == row.id)
        )
        destinations = tuple(
            PayoutDestination(
                destination_id=d.id,
                verified=d.verified,
                bank_name=d.bank_name,
                account_last4=d.account_last4,
            )
            for d in result.scalars().all()
        )
        return UserProfile(
            user_id=row.id,
            email=row.email,
            full_name=row.full_name,
            email_verified=row.email_verified,
            kyc_status=KycStatus(row.kyc_status),
            account_status=AccountStatus(row.account_status),
            tier=TierId(row.tier),
            can_create_escrow=row.can_create_escrow,
            monthly_usage=MonthlyUsage(row.monthly_transaction_count, row.usage_reset_month),
            payout_destinations=destinations,
        )


class AdminRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, admin: AdminProfile) -> AdminProfile:
        self._session.add(
            AdminRow(
                id=admin.admin_id,
                role=admin.role.value,
                permissions=sorted(p.value for p in admin.permissions),
                is_active=admin.is_active,
            )
        )
        await self._session.flush()
        return admin

    async def get(self, admin_id: str) -> AdminProfile:
        row = await self._session.get(AdminRow, admin_id)
        if row is None:
            raise PermissionDeniedError(admin_id, "act as an administrator")
        return AdminProfile(
            admin_id=row.id,
            role=AdminRole(row.role),
            permissions=frozenset(AdminPermission(p) for p in row.permissions or []),
            is_active=row.is_active,
        )
