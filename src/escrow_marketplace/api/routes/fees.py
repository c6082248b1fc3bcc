"""Fee and tier pricing routes. All read-only.

Routes:
    GET    /api/v1/fees/breakdown        — Fee breakdown for an amount and tier
    POST   /api/v1/fees/quote            — Caller's fees + estimated gateway cost
    POST   /api/v1/fees/eligibility      — Verification Gate decision for an amount
    GET    /api/v1/fees/tiers            — Every tier priced in a currency
    GET    /api/v1/fees/tiers/{id}/upgrade — Cost of upgrading to a tier
"""

from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from escrow_marketplace.api.deps import get_current_user_id, get_pricing_service
from escrow_marketplace.domain.enums import Currency, TierId
from escrow_marketplace.domain.tiers import tiers_by_rank
from escrow_marketplace.schemas.fees import (
    EligibilityRequest,
    EligibilityResponse,
    FeeBreakdownResponse,
    FeeQuoteResponse,
    QuoteRequest,
    TierPricingResponse,
    UpgradeCostResponse,
)
from escrow_marketplace.services.pricing_service import PricingService

router = APIRouter(prefix="/api/v1/fees", tags=["Fees"])


@router.get("/breakdown", response_model=FeeBreakdownResponse, summary="Fee breakdown")
async def get_fee_breakdown(
    amount: Decimal = Query(..., gt=0),
    currency: str = Query(Currency.USD.value, min_length=3, max_length=5),
    tier: TierId = Query(TierId.FREE),
    svc: PricingService = Depends(get_pricing_service),
) -> FeeBreakdownResponse:
    breakdown = svc.get_fee_breakdown(amount, currency, tier)
    return FeeBreakdownResponse.model_validate(breakdown.to_dict())


@router.post("/quote", response_model=FeeQuoteResponse, summary="Quote for the caller's tier")
async def quote(
    request: QuoteRequest,
    user_id: str = Depends(get_current_user_id),
    svc: PricingService = Depends(get_pricing_service),
) -> FeeQuoteResponse:
    result = await svc.quote(request.amount, request.currency, user_id, request.payment_method)
    return FeeQuoteResponse.model_validate(result.to_dict())


@router.post(
    "/eligibility",
    response_model=EligibilityResponse,
    summary="Check whether the caller may create this transaction",
)
async def check_eligibility(
    request: EligibilityRequest,
    user_id: str = Depends(get_current_user_id),
    svc: PricingService = Depends(get_pricing_service),
) -> EligibilityResponse:
    decision = await svc.check_eligibility(user_id, request.amount, request.currency)
    return EligibilityResponse.model_validate(decision.to_dict())


@router.get("/tiers", response_model=list[TierPricingResponse], summary="Tier catalog")
async def list_tiers(
    currency: str = Query(Currency.USD.value, min_length=3, max_length=5),
    svc: PricingService = Depends(get_pricing_service),
) -> list[TierPricingResponse]:
    return [
        TierPricingResponse.model_validate(svc.tier_pricing(tier.id, currency).to_dict())
        for tier in tiers_by_rank()
    ]


@router.get(
    "/tiers/{tier_id}/upgrade",
    response_model=UpgradeCostResponse,
    summary="Cost of upgrading to a tier",
)
async def get_upgrade_cost(
    tier_id: TierId,
    currency: str = Query(Currency.USD.value, min_length=3, max_length=5),
    svc: PricingService = Depends(get_pricing_service),
) -> UpgradeCostResponse:
    cost = svc.upgrade_cost(tier_id, currency)
    return UpgradeCostResponse(
        target_tier=cost.target_tier.value,
        currency=cost.currency.value,
        setup_fee=cost.setup_fee,
        monthly_cost=cost.monthly_cost,
        total_due=cost.total_due,
    )
