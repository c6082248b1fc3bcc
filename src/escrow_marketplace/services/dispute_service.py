"""Dispute Service — admin assignment and resolution.

Resolving a dispute moves two records: the dispute itself and its parent
escrow (disputed -> completed or cancelled). Both are written with a
compare-and-swap on the versions read at the start of the call. The dispute
is written first, so a concurrent assign or resolve that got there first
fails the call before the escrow is touched. If the escrow write then loses,
the dispute is put back as it was read.

The escrow carries a copy of the dispute status (`escrow.dispute.status`);
assignment mirrors `under_review` onto it and resolution `resolved`.
"""

from __future__ import annotations

import copy
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_marketplace.domain.disputes import Dispute, assign, resolve, settle_dispute
from escrow_marketplace.domain.enums import (
    DisputeResolution,
    DisputeStatus,
    DisputeWinner,
    ParticipantRole,
)
from escrow_marketplace.domain.exceptions import ConcurrentModificationError, ValidationError
from escrow_marketplace.domain.models import Settlement
from escrow_marketplace.domain.ports import TransitionNotice
from escrow_marketplace.domain.state_machine import validate_transition
from escrow_marketplace.logging_config import get_logger
from escrow_marketplace.services.notifications import NotificationDispatcher

if TYPE_CHECKING:
    from collections.abc import Callable
    from decimal import Decimal

    from escrow_marketplace.domain.ports import AdminDirectory, DisputeStore, EscrowStore

logger = get_logger(__name__)

MIRROR_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DisputeService:
    """Admin-side dispute handling."""

    def __init__(
        self,
        *,
        escrows: EscrowStore,
        disputes: DisputeStore,
        admins: AdminDirectory,
        notifications: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._escrows = escrows
        self._disputes = disputes
        self._admins = admins
        self._notifications = notifications or NotificationDispatcher()
        self._clock = clock

    async def get_dispute(self, dispute_id: str) -> Dispute:
        return await self._disputes.get(dispute_id)

    async def assign_dispute(self, dispute_id: str, admin_id: str) -> Dispute:
        """Assign (or reassign) a dispute to an admin; status -> under_review."""
        admin = await self._admins.get(admin_id)
        dispute = await self._disputes.get(dispute_id)
        read_version = dispute.version

        assign(dispute, admin, self._clock())
        dispute = await self._disputes.save(dispute, read_version)
        await self._mirror_status(dispute)
        logger.info("dispute.assigned", dispute_id=dispute_id, admin_id=admin_id)
        return dispute

    async def _mirror_status(self, dispute: Dispute) -> None:
        """Copy the dispute's status onto the escrow's embedded sub-record.

        A lost race is re-read; once the escrow's dispute is resolved (the
        only other writer of a disputed escrow) there is nothing to mirror.
        """
        for attempt in range(1, MIRROR_ATTEMPTS + 1):
            escrow = await self._escrows.get(dispute.escrow_id)
            embedded = escrow.dispute
            if (
                embedded.dispute_id != dispute.dispute_id
                or not embedded.is_open
                or embedded.status == dispute.status
            ):
                return
            read_version = escrow.version
            escrow.dispute = replace(embedded, status=dispute.status)
            escrow.updated_at = self._clock()
            try:
                await self._escrows.save(escrow, read_version)
                return
            except ConcurrentModificationError:
                if attempt == MIRROR_ATTEMPTS:
                    raise
                logger.info(
                    "dispute.mirror_conflict",
                    dispute_id=dispute.dispute_id,
                    escrow_id=dispute.escrow_id,
                    attempt=attempt,
                )

    async def resolve_dispute(
        self,
        dispute_id: str,
        admin_id: str,
        resolution: DisputeResolution | str,
        winner: DisputeWinner | str,
        refund_percentage: Decimal | int | str | None = None,
        notes: str = "",
    ) -> Dispute:
        """Record the ruling and settle the parent escrow.

        A full refund cancels the escrow (resolve_refund); any release to
        the seller completes it (resolve_release).

        Raises:
            PermissionDeniedError: unknown admin or missing manage_disputes.
            AlreadyResolvedError: the dispute is already closed.
            InvalidStateTransitionError: the escrow is no longer disputed.
            ConcurrentModificationError: either record changed since it was read.
        """
        try:
            resolution = DisputeResolution(str(resolution))
            winner = DisputeWinner(str(winner))
        except ValueError as err:
            raise ValidationError(str(err)) from err

        admin = await self._admins.get(admin_id)
        dispute = await self._disputes.get(dispute_id)
        escrow = await self._escrows.get(dispute.escrow_id)
        dispute_version = dispute.version
        escrow_version = escrow.version
        as_read = copy.deepcopy(dispute)
        now = self._clock()

        resolve(
            dispute,
            admin,
            resolution=resolution,
            winner=winner,
            now=now,
            refund_percentage=refund_percentage,
            notes=notes,
        )
        settlement = settle_dispute(
            amount=escrow.amount,
            winner=winner,
            reporter_role=dispute.reporter_role,
            refund_percentage=dispute.refund_percentage,
            buyer_pays=escrow.payment.fees.buyer_pays if escrow.payment else None,
            currency=escrow.currency,
        )
        validate_transition(escrow.status, settlement.event)

        escrow.dispute = replace(
            escrow.dispute, status=DisputeStatus.RESOLVED, resolution=resolution
        )
        escrow.settlement = Settlement(
            refund_to_buyer=settlement.refund_to_buyer,
            release_to_seller=settlement.release_to_seller,
            decided_at=now,
            reason=f"dispute {dispute.dispute_id}: {resolution.value}",
        )
        note = notes or f"Dispute resolved: {resolution.value} ({winner.value})"
        escrow.apply(
            settlement.event,
            actor_id=admin_id,
            actor_role=ParticipantRole.ADMIN,
            now=now,
            note=note,
        )

        dispute = await self._disputes.save(dispute, dispute_version)
        try:
            saved_escrow = await self._escrows.save(escrow, escrow_version)
        except ConcurrentModificationError:
            await self._disputes.save(as_read, dispute.version)
            logger.warning(
                "dispute.resolution_reverted",
                dispute_id=dispute_id,
                escrow_id=escrow.escrow_id,
                expected_version=escrow_version,
            )
            raise

        logger.info(
            "dispute.resolved",
            dispute_id=dispute_id,
            escrow_id=saved_escrow.escrow_id,
            admin_id=admin_id,
            resolution=resolution.value,
            winner=winner.value,
            refund_to_buyer=str(settlement.refund_to_buyer),
            release_to_seller=str(settlement.release_to_seller),
            escrow_status=saved_escrow.status.value,
        )
        self._notifications.dispatch(
            TransitionNotice(
                escrow_id=saved_escrow.escrow_id,
                event=settlement.event,
                status=saved_escrow.status,
                actor_id=admin_id,
                recipients=(saved_escrow.buyer_id, saved_escrow.seller_id),
                occurred_at=now,
                note=note,
            )
        )
        return dispute
