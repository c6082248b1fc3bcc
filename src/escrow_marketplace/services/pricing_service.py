"""Pricing Service — read-only fee quotes and eligibility checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_marketplace.domain.enums import PaymentMethod
from escrow_marketplace.domain.fees import (
    FeeBreakdown,
    GatewayCost,
    compute_fees,
    estimate_gateway_cost,
)
from escrow_marketplace.domain.tiers import tier_pricing, upgrade_cost
from escrow_marketplace.domain.verification import can_create_transaction

if TYPE_CHECKING:
    from collections.abc import Callable
    from decimal import Decimal

    from escrow_marketplace.domain.enums import TierId
    from escrow_marketplace.domain.ports import UserDirectory
    from escrow_marketplace.domain.tiers import TierPricing, UpgradeCost
    from escrow_marketplace.domain.verification import Decision


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class FeeQuote:
    fees: FeeBreakdown
    gateway_cost: GatewayCost

    def to_dict(self) -> dict:
        return {"fees": self.fees.to_dict(), "gateway_cost": self.gateway_cost.to_dict()}


class PricingService:
    def __init__(self, users: UserDirectory, clock: Callable[[], datetime] = _utcnow) -> None:
        self._users = users
        self._clock = clock

    def get_fee_breakdown(
        self, amount: Decimal | str | int, currency: str, tier_id: TierId | str
    ) -> FeeBreakdown:
        return compute_fees(amount, currency, tier_id)

    async def quote(
        self,
        amount: Decimal | str | int,
        currency: str,
        user_id: str,
        payment_method: PaymentMethod | str = PaymentMethod.FLUTTERWAVE,
    ) -> FeeQuote:
        """Fees at the user's current tier plus the estimated gateway cost."""
        user = await self._users.get(user_id)
        fees = compute_fees(amount, currency, user.tier)
        return FeeQuote(fees=fees, gateway_cost=estimate_gateway_cost(fees, payment_method))

    async def check_eligibility(
        self, user_id: str, amount: Decimal | str | int, currency: str
    ) -> Decision:
        user = await self._users.get(user_id)
        return can_create_transaction(user, amount, currency, self._clock())

    def tier_pricing(self, tier_id: TierId | str, currency: str) -> TierPricing:
        return tier_pricing(tier_id, currency)

    def upgrade_cost(self, tier_id: TierId | str, currency: str) -> UpgradeCost:
        return upgrade_cost(tier_id, currency)
