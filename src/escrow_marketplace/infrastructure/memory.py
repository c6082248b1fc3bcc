"""In-memory store implementations.

Back the dry-run simulation and the service tests. Documents are deep-copied
on the way in and out, so a caller holding an Escrow never shares state with
the store; a write only lands through `save`, which compares versions under
a lock exactly like the SQL repository's conditional UPDATE.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from typing import TYPE_CHECKING

from escrow_marketplace.domain.enums import EscrowStatus
from escrow_marketplace.domain.exceptions import (
    ConcurrentModificationError,
    DisputeNotFoundError,
    DuplicateEscrowIdError,
    EscrowNotFoundError,
    PaymentReferenceInUseError,
    PermissionDeniedError,
    UserNotFoundError,
)

if TYPE_CHECKING:
    from datetime import datetime

    from escrow_marketplace.domain.disputes import AdminProfile, Dispute
    from escrow_marketplace.domain.enums import TierId
    from escrow_marketplace.domain.models import Escrow
    from escrow_marketplace.domain.verification import UserProfile


class InMemoryEscrowStore:
    """EscrowStore keyed by the human-facing escrow_id."""

    def __init__(self) -> None:
        self._docs: dict[str, Escrow] = {}
        self._lock = asyncio.Lock()

    async def add(self, escrow: Escrow) -> Escrow:
        async with self._lock:
            if escrow.escrow_id in self._docs:
                raise DuplicateEscrowIdError(escrow.escrow_id)
            escrow.version = 1
            self._docs[escrow.escrow_id] = copy.deepcopy(escrow)
        return copy.deepcopy(escrow)

    async def get(self, escrow_id: str) -> Escrow:
        doc = self._docs.get(escrow_id)
        if doc is None:
            raise EscrowNotFoundError(escrow_id)
        return copy.deepcopy(doc)

    async def save(self, escrow: Escrow, expected_version: int) -> Escrow:
        async with self._lock:
            current = self._docs.get(escrow.escrow_id)
            if current is None:
                raise EscrowNotFoundError(escrow.escrow_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(escrow.escrow_id, expected_version)
            if escrow.payment is not None and self._funded_by_other(escrow):
                raise PaymentReferenceInUseError(escrow.payment.reference)
            escrow.version = expected_version + 1
            self._docs[escrow.escrow_id] = copy.deepcopy(escrow)
        return copy.deepcopy(escrow)

    def _funded_by_other(self, escrow: Escrow) -> bool:
        return any(
            doc.payment is not None and doc.payment.reference == escrow.payment.reference
            for escrow_id, doc in self._docs.items()
            if escrow_id != escrow.escrow_id
        )

    async def list_due_for_release(self, now: datetime, limit: int = 100) -> list[Escrow]:
        due = [
            doc
            for doc in self._docs.values()
            if doc.status == EscrowStatus.DELIVERED
            and doc.delivery.auto_release_enabled
            and doc.delivery.auto_release_at is not None
            and doc.delivery.auto_release_at <= now
            and not doc.dispute.is_open
        ]
        due.sort(key=lambda doc: doc.delivery.auto_release_at)
        return [copy.deepcopy(doc) for doc in due[:limit]]

    async def list_for_user(self, user_id: str) -> list[Escrow]:
        docs = [
            doc for doc in self._docs.values() if user_id in (doc.buyer_id, doc.seller_id)
        ]
        docs.sort(key=lambda doc: doc.created_at, reverse=True)
        return [copy.deepcopy(doc) for doc in docs]


class InMemoryDisputeStore:
    def __init__(self) -> None:
        self._docs: dict[str, Dispute] = {}
        self._lock = asyncio.Lock()

    async def add(self, dispute: Dispute) -> Dispute:
        async with self._lock:
            dispute.version = 1
            self._docs[dispute.dispute_id] = copy.deepcopy(dispute)
        return copy.deepcopy(dispute)

    async def get(self, dispute_id: str) -> Dispute:
        doc = self._docs.get(dispute_id)
        if doc is None:
            raise DisputeNotFoundError(dispute_id)
        return copy.deepcopy(doc)

    async def save(self, dispute: Dispute, expected_version: int) -> Dispute:
        async with self._lock:
            current = self._docs.get(dispute.dispute_id)
            if current is None:
                raise DisputeNotFoundError(dispute.dispute_id)
            if current.version != expected_version:
                raise ConcurrentModificationError(dispute.dispute_id, expected_version)
            dispute.version = expected_version + 1
            self._docs[dispute.dispute_id] = copy.deepcopy(dispute)
        return copy.deepcopy(dispute)


class InMemoryUserDirectory:
    def __init__(self, users: list[UserProfile] | None = None) -> None:
        self._users: dict[str, UserProfile] = {}
        self._lock = asyncio.Lock()
        for user in users or []:
            self.put(user)

    def put(self, user: UserProfile) -> None:
        self._users[user.user_id] = user

    async def get(self, user_id: str) -> UserProfile:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def find_by_email(self, email: str) -> UserProfile | None:
        wanted = email.strip().lower()
        for user in self._users.values():
            if user.email.lower() == wanted:
                return user
        return None

    async def reserve_transaction(self, user_id: str, now: datetime, limit: int | None) -> bool:
        async with self._lock:
            user = await self.get(user_id)
            usage = user.monthly_usage.reserve(now, limit)
            if usage is None:
                return False
            self._users[user_id] = replace(user, monthly_usage=usage)
            return True

    async def release_transaction(self, user_id: str, now: datetime) -> None:
        async with self._lock:
            user = await self.get(user_id)
            self._users[user_id] = replace(user, monthly_usage=user.monthly_usage.release(now))

    def set_tier(self, user_id: str, tier: TierId) -> None:
        self._users[user_id] = replace(self._users[user_id], tier=tier)


class InMemoryAdminDirectory:
    def __init__(self, admins: list[AdminProfile] | None = None) -> None:
        self._admins = {admin.admin_id: admin for admin in admins or []}

    async def get(self, admin_id: str) -> AdminProfile:
        admin = self._admins.get(admin_id)
        if admin is None:
            raise PermissionDeniedError(admin_id, "act as an administrator")
        return admin
