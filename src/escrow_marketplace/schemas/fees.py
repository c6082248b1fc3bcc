"""Pydantic schemas for fee quotes, tier pricing and eligibility."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from escrow_marketplace.domain.enums import PaymentMethod


class QuoteRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=5)
    payment_method: PaymentMethod = PaymentMethod.FLUTTERWAVE


class EligibilityRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=5)


class FeeBreakdownResponse(BaseModel):
    amount: Decimal
    currency: str
    tier_id: str
    buyer_fee_percent: Decimal
    seller_fee_percent: Decimal
    total_fee_percent: Decimal
    buyer_fee: Decimal
    seller_fee: Decimal
    platform_fee: Decimal
    buyer_pays: Decimal
    seller_receives: Decimal
    buyer_pays_formatted: str
    seller_receives_formatted: str


class GatewayCostResponse(BaseModel):
    payment_method: str
    gateway_incoming: Decimal
    gateway_outgoing: Decimal
    total_gateway_cost: Decimal
    platform_profit: Decimal
    profit_percent: Decimal


class FeeQuoteResponse(BaseModel):
    fees: FeeBreakdownResponse
    gateway_cost: GatewayCostResponse


class TierPricingResponse(BaseModel):
    tier_id: str
    name: str
    currency: str
    monthly_cost: Decimal
    monthly_cost_formatted: str
    setup_fee: Decimal
    max_transaction_amount: Decimal | None = Field(
        description="Null when the tier has no ceiling in this currency"
    )
    max_transactions_per_month: int = Field(description="-1 means unbounded")
    buyer_fee_percent: Decimal
    seller_fee_percent: Decimal
    combined_fee_percent: Decimal


class UpgradeCostResponse(BaseModel):
    target_tier: str
    currency: str
    setup_fee: Decimal
    monthly_cost: Decimal
    total_due: Decimal


class EligibilityResponse(BaseModel):
    """Verification Gate decision. Denials name the first broken rule."""

    allowed: bool
    reason: str | None = None
    required_action: str | None = None
    step: int | None = None
    requires_verification: str | None = None
    kyc_status: str | None = None
    upgrade_required: bool = False
    limit: str | None = None
    current: str | None = None
