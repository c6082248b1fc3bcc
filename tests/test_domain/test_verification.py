"""Tests for the Verification Gate."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from escrow_marketplace.domain.enums import (
    AccountStatus,
    KycStatus,
    RequiredAction,
    TierId,
)
from escrow_marketplace.domain.exceptions import InvalidAmountError
from escrow_marketplace.domain.verification import (
    Allowed,
    Denied,
    MonthlyUsage,
    PayoutDestination,
    UserProfile,
    can_access_escrow,
    can_create_transaction,
    can_receive_payouts,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def verified_user() -> UserProfile:
    return UserProfile(
        user_id="u-1",
        email="ada@example.com",
        email_verified=True,
        kyc_status=KycStatus.APPROVED,
        tier=TierId.FREE,
    )


class TestCanAccessEscrow:
    def test_allowed(self, verified_user: UserProfile) -> None:
        decision = can_access_escrow(verified_user)
        assert isinstance(decision, Allowed)
        assert decision

    def test_email_first(self, verified_user: UserProfile) -> None:
        user = replace(verified_user, email_verified=False, kyc_status=KycStatus.REJECTED)
        decision = can_access_escrow(user)
        assert isinstance(decision, Denied)
        assert decision.step == 1
        assert decision.required_action == RequiredAction.VERIFY_EMAIL
        assert decision.requires_verification == "email"

    def test_rejected_kyc(self, verified_user: UserProfile) -> None:
        decision = can_access_escrow(replace(verified_user, kyc_status=KycStatus.REJECTED))
        assert decision == Denied(
            reason="KYC verification required",
            required_action=RequiredAction.COMPLETE_KYC,
            step=2,
            requires_verification="kyc",
            kyc_status=KycStatus.REJECTED,
        )

    @pytest.mark.parametrize(
        "status",
        [s for s in KycStatus if s != KycStatus.APPROVED],
    )
    def test_any_non_approved_kyc_denied(
        self, verified_user: UserProfile, status: KycStatus
    ) -> None:
        decision = can_access_escrow(replace(verified_user, kyc_status=status))
        assert not decision
        assert decision.kyc_status == status

    @pytest.mark.parametrize("status", [AccountStatus.SUSPENDED, AccountStatus.DELETED])
    def test_inactive_account(self, verified_user: UserProfile, status: AccountStatus) -> None:
        decision = can_access_escrow(replace(verified_user, account_status=status))
        assert decision.step == 3
        assert decision.reason == "Account suspended or deleted"
        assert decision.required_action == RequiredAction.CONTACT_SUPPORT

    def test_escrow_flag(self, verified_user: UserProfile) -> None:
        decision = can_access_escrow(replace(verified_user, can_create_escrow=False))
        assert decision.step == 4

    def test_kyc_verified_is_derived(self, verified_user: UserProfile) -> None:
        assert verified_user.is_kyc_verified
        assert not replace(verified_user, kyc_status=KycStatus.PENDING).is_kyc_verified

    def test_denial_payload(self, verified_user: UserProfile) -> None:
        data = can_access_escrow(replace(verified_user, kyc_status=KycStatus.PENDING)).to_dict()
        assert data == {
            "allowed": False,
            "reason": "KYC verification required",
            "required_action": "complete_kyc",
            "step": 2,
            "requires_verification": "kyc",
            "kyc_status": "pending",
        }


class TestCanCreateTransaction:
    def test_allowed(self, verified_user: UserProfile) -> None:
        assert can_create_transaction(verified_user, Decimal("100"), "USD", NOW)

    def test_gate_runs_first(self, verified_user: UserProfile) -> None:
        user = replace(verified_user, email_verified=False)
        assert can_create_transaction(user, Decimal("100000"), "USD", NOW).step == 1

    def test_monthly_limit(self, verified_user: UserProfile) -> None:
        user = replace(verified_user, monthly_usage=MonthlyUsage(3, "2026-03"))
        decision = can_create_transaction(user, Decimal("10"), "USD", NOW)
        assert decision.step == 5
        assert decision.upgrade_required
        assert decision.required_action == RequiredAction.UPGRADE_TIER
        assert decision.limit == 3
        assert decision.current == 3

    def test_monthly_usage_resets(self, verified_user: UserProfile) -> None:
        user = replace(verified_user, monthly_usage=MonthlyUsage(3, "2026-02"))
        assert can_create_transaction(user, Decimal("10"), "USD", NOW)

    def test_unbounded_monthly_limit(self, verified_user: UserProfile) -> None:
        user = replace(
            verified_user,
            tier=TierId.ENTERPRISE,
            monthly_usage=MonthlyUsage(10_000, "2026-03"),
        )
        assert can_create_transaction(user, Decimal("10"), "USD", NOW)

    def test_amount_ceiling(self, verified_user: UserProfile) -> None:
        decision = can_create_transaction(verified_user, Decimal("500.01"), "USD", NOW)
        assert decision.step == 6
        assert decision.limit == Decimal("500")
        assert decision.to_dict()["upgrade_required"] is True

    def test_amount_at_ceiling(self, verified_user: UserProfile) -> None:
        assert can_create_transaction(verified_user, Decimal("500"), "USD", NOW)

    def test_local_currency_ceiling(self, verified_user: UserProfile) -> None:
        assert not can_create_transaction(verified_user, Decimal("750001"), "NGN", NOW)
        assert can_create_transaction(verified_user, Decimal("750000"), "NGN", NOW)

    def test_api_tier_unbounded_amount(self, verified_user: UserProfile) -> None:
        user = replace(verified_user, tier=TierId.API)
        assert can_create_transaction(user, Decimal("10000000"), "USD", NOW)

    def test_invalid_amount(self, verified_user: UserProfile) -> None:
        with pytest.raises(InvalidAmountError):
            can_create_transaction(verified_user, Decimal("-1"), "USD", NOW)


class TestCanReceivePayouts:
    def test_requires_verified_destination(self, verified_user: UserProfile) -> None:
        user = replace(
            verified_user,
            payout_destinations=(PayoutDestination("dst-1", verified=False),),
        )
        decision = can_receive_payouts(user)
        assert decision.step == 5
        assert decision.required_action == RequiredAction.ADD_PAYOUT_METHOD

    def test_allowed(self, verified_user: UserProfile) -> None:
        user = replace(
            verified_user,
            payout_destinations=(PayoutDestination("dst-1", verified=True),),
        )
        assert can_receive_payouts(user)

    def test_gate_runs_first(self, verified_user: UserProfile) -> None:
        user = replace(verified_user, account_status=AccountStatus.SUSPENDED)
        assert can_receive_payouts(user).step == 3


class TestMonthlyUsage:
    def test_record_in_new_month(self) -> None:
        usage = MonthlyUsage(7, "2026-02").record_transaction(NOW)
        assert usage == MonthlyUsage(1, "2026-03")

    def test_record_in_same_month(self) -> None:
        usage = MonthlyUsage(2, "2026-03").record_transaction(NOW)
        assert usage.transaction_count == 3

    def test_reserve_below_limit(self) -> None:
        assert MonthlyUsage(9, "2026-03").reserve(NOW, 10) == MonthlyUsage(10, "2026-03")

    def test_reserve_at_limit(self) -> None:
        assert MonthlyUsage(10, "2026-03").reserve(NOW, 10) is None

    def test_reserve_after_month_rollover(self) -> None:
        assert MonthlyUsage(10, "2026-02").reserve(NOW, 10) == MonthlyUsage(1, "2026-03")

    def test_unbounded_reserve(self) -> None:
        assert MonthlyUsage(5000, "2026-03").reserve(NOW, None).transaction_count == 5001

    def test_release_never_goes_negative(self) -> None:
        assert MonthlyUsage(0, "2026-03").release(NOW) == MonthlyUsage(0, "2026-03")
        assert MonthlyUsage(4, "2026-02").release(NOW) == MonthlyUsage(0, "2026-03")
