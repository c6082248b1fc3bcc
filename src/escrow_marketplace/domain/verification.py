"""Verification Gate.

Pure predicates over a user's email, KYC, account-status and tier fields.
Checks run in a fixed order and the first failure wins, so a caller always
learns about the first broken rule (an unverified email is reported before a
missing KYC approval).

Each denial carries a step number and a required action so the UI can route
the user to a specific next step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from escrow_marketplace.domain.enums import (
    AccountStatus,
    Currency,
    KycStatus,
    RequiredAction,
    TierId,
)
from escrow_marketplace.domain.fees import parse_amount
from escrow_marketplace.domain.tiers import get_tier, parse_currency


def month_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


@dataclass(frozen=True)
class MonthlyUsage:
    """Escrow creations counted against the tier's monthly cap.

    The counter resets when the calendar month changes. The reset is derived
    on read, never written by a scheduler.
    """

    transaction_count: int = 0
    reset_month: str = ""

    def count_for(self, now: datetime) -> int:
        if self.reset_month != month_key(now):
            return 0
        return self.transaction_count

    def record_transaction(self, now: datetime) -> MonthlyUsage:
        return MonthlyUsage(transaction_count=self.count_for(now) + 1, reset_month=month_key(now))

    def reserve(self, now: datetime, limit: int | None) -> MonthlyUsage | None:
        """Count one more creation, or None when `limit` is already used up."""
        if limit is not None and self.count_for(now) >= limit:
            return None
        return self.record_transaction(now)

    def release(self, now: datetime) -> MonthlyUsage:
        return MonthlyUsage(max(self.count_for(now) - 1, 0), month_key(now))


@dataclass(frozen=True)
class PayoutDestination:
    destination_id: str
    verified: bool = False
    bank_name: str = ""
    account_last4: str = ""


@dataclass(frozen=True)
class UserProfile:
    """The fields of a user account the escrow core reads.

    `kyc_status` is the single source of truth for KYC; `is_kyc_verified`
    is derived from it.
    """

    user_id: str
    email: str
    email_verified: bool = False
    kyc_status: KycStatus = KycStatus.UNVERIFIED
    account_status: AccountStatus = AccountStatus.ACTIVE
    tier: TierId = TierId.FREE
    monthly_usage: MonthlyUsage = field(default_factory=MonthlyUsage)
    can_create_escrow: bool = True
    payout_destinations: tuple[PayoutDestination, ...] = ()
    full_name: str = ""

    @property
    def is_kyc_verified(self) -> bool:
        return self.kyc_status == KycStatus.APPROVED

    @property
    def is_active(self) -> bool:
        return self.account_status == AccountStatus.ACTIVE

    @property
    def has_verified_payout_destination(self) -> bool:
        return any(d.verified for d in self.payout_destinations)


@dataclass(frozen=True)
class Allowed:
    allowed: bool = field(default=True, init=False)

    def __bool__(self) -> bool:
        return True

    def to_dict(self) -> dict:
        return {"allowed": True}


@dataclass(frozen=True)
class Denied:
    """A gate denial: the first rule the user broke and how to fix it."""

    reason: str
    required_action: RequiredAction
    step: int
    requires_verification: str | None = None
    kyc_status: KycStatus | None = None
    upgrade_required: bool = False
    limit: Decimal | int | None = None
    current: Decimal | int | None = None
    allowed: bool = field(default=False, init=False)

    def __bool__(self) -> bool:
        return False

    def to_dict(self) -> dict:
        data: dict = {
            "allowed": False,
            "reason": self.reason,
            "required_action": self.required_action.value,
            "step": self.step,
        }
        if self.requires_verification is not None:
            data["requires_verification"] = self.requires_verification
        if self.kyc_status is not None:
            data["kyc_status"] = self.kyc_status.value
        if self.upgrade_required:
            data["upgrade_required"] = True
            data["limit"] = str(self.limit)
            data["current"] = str(self.current)
        return data


Decision = Allowed | Denied

ALLOWED = Allowed()


def can_access_escrow(user: UserProfile) -> Decision:
    """Steps 1-4: email, KYC, account status, per-user escrow flag."""
    if not user.email_verified:
        return Denied(
            reason="Email verification required",
            required_action=RequiredAction.VERIFY_EMAIL,
            step=1,
            requires_verification="email",
        )
    if not user.is_kyc_verified:
        return Denied(
            reason="KYC verification required",
            required_action=RequiredAction.COMPLETE_KYC,
            step=2,
            requires_verification="kyc",
            kyc_status=user.kyc_status,
        )
    if not user.is_active:
        return Denied(
            reason="Account suspended or deleted",
            required_action=RequiredAction.CONTACT_SUPPORT,
            step=3,
        )
    if not user.can_create_escrow:
        return Denied(
            reason="Escrow access restricted",
            required_action=RequiredAction.CONTACT_SUPPORT,
            step=4,
        )
    return ALLOWED


def monthly_cap(tier_id: TierId | str) -> int | None:
    """The tier's monthly creation cap; None when unbounded."""
    tier = get_tier(tier_id)
    return None if tier.has_unbounded_transactions else tier.max_transactions_per_month


def monthly_limit_denial(tier_id: TierId | str, used: int) -> Denied:
    tier = get_tier(tier_id)
    return Denied(
        reason=f"Monthly transaction limit reached for {tier.name} tier",
        required_action=RequiredAction.UPGRADE_TIER,
        step=5,
        upgrade_required=True,
        limit=tier.max_transactions_per_month,
        current=used,
    )


def can_create_transaction(
    user: UserProfile,
    amount: Decimal | str | int,
    currency: str | Currency,
    now: datetime,
) -> Decision:
    """Steps 1-4, then the tier's monthly count (5) and amount ceiling (6).

    Raises:
        InvalidAmountError, UnsupportedCurrencyError: for malformed input.
    """
    decision = can_access_escrow(user)
    if not decision:
        return decision

    code = parse_currency(currency)
    value = parse_amount(amount, code)
    tier = get_tier(user.tier)

    used = user.monthly_usage.count_for(now)
    cap = monthly_cap(tier.id)
    if cap is not None and used >= cap:
        return monthly_limit_denial(tier.id, used)

    ceiling = tier.amount_ceiling(code)
    if ceiling is not None and value > ceiling:
        return Denied(
            reason=f"Amount exceeds the {tier.name} tier limit of {ceiling} {code.value}",
            required_action=RequiredAction.UPGRADE_TIER,
            step=6,
            upgrade_required=True,
            limit=ceiling,
            current=value,
        )
    return ALLOWED


def can_receive_payouts(user: UserProfile) -> Decision:
    """Steps 1-4, then at least one verified payout destination (5)."""
    decision = can_access_escrow(user)
    if not decision:
        return decision
    if not user.has_verified_payout_destination:
        return Denied(
            reason="A verified payout destination is required",
            required_action=RequiredAction.ADD_PAYOUT_METHOD,
            step=5,
        )
    return ALLOWED
