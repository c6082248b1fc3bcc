"""Pydantic API schemas."""

from escrow_marketplace.schemas.dispute import DisputeResponse, ResolveDisputeRequest
from escrow_marketplace.schemas.escrow import (
    CancelEscrowRequest,
    ConfirmPayoutRequest,
    CreateEscrowRequest,
    EscrowResponse,
    EscrowStatusResponse,
    FundEscrowRequest,
    FundingInstructionsResponse,
    HealthResponse,
    RaiseDisputeRequest,
    SubmitDeliveryRequest,
    TimelineEntryResponse,
    VersionedRequest,
)
from escrow_marketplace.schemas.fees import (
    EligibilityResponse,
    FeeBreakdownResponse,
    FeeQuoteResponse,
    QuoteRequest,
    TierPricingResponse,
    UpgradeCostResponse,
)

__all__ = [
    "CancelEscrowRequest",
    "ConfirmPayoutRequest",
    "CreateEscrowRequest",
    "DisputeResponse",
    "EligibilityResponse",
    "EscrowResponse",
    "EscrowStatusResponse",
    "FeeBreakdownResponse",
    "FeeQuoteResponse",
    "FundEscrowRequest",
    "FundingInstructionsResponse",
    "HealthResponse",
    "QuoteRequest",
    "RaiseDisputeRequest",
    "ResolveDisputeRequest",
    "SubmitDeliveryRequest",
    "TierPricingResponse",
    "TimelineEntryResponse",
    "UpgradeCostResponse",
    "VersionedRequest",
]
