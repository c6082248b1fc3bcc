"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API. They are
separate from the domain dataclasses and ORM rows; responses are built from
the domain objects' `to_dict()` output.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from escrow_marketplace.domain.enums import (
    DeliveryMethod,
    DisputeType,
    PaymentMethod,
    ProofType,
)
from escrow_marketplace.domain.models import DESCRIPTION_MAX_LENGTH, TITLE_MAX_LENGTH
from escrow_marketplace.schemas.fees import FeeBreakdownResponse

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class VersionedRequest(BaseModel):
    """Base for mutations that may pin the version the caller last read."""

    expected_version: int | None = Field(
        default=None,
        ge=1,
        description="Fail with 409 if the escrow changed since this version was read",
    )


class CreateEscrowRequest(BaseModel):
    """Request body for creating a new escrow. The caller becomes the buyer."""

    seller_email: str = Field(
        ...,
        min_length=3,
        max_length=254,
        description="Email of the seller's account",
        examples=["seller@example.com"],
    )
    amount: Decimal = Field(..., gt=0, description="Escrow amount", examples=["1000.00"])
    currency: str = Field(..., min_length=3, max_length=5, examples=["USD", "NGN"])
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str = Field(default="", max_length=DESCRIPTION_MAX_LENGTH)
    delivery_method: DeliveryMethod = DeliveryMethod.DIGITAL
    auto_release_days: int | None = Field(
        default=None,
        ge=1,
        le=90,
        description="Days after delivery before funds release automatically",
    )
    auto_release_enabled: bool | None = None


class FundEscrowRequest(VersionedRequest):
    payment_reference: str = Field(..., min_length=1, max_length=100)
    payment_method: PaymentMethod = PaymentMethod.PAYSTACK


class SubmitDeliveryRequest(VersionedRequest):
    proof_type: ProofType
    value: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Tracking number, download link, transaction hash, ...",
    )
    description: str = Field(default="", max_length=2000)


class CancelEscrowRequest(VersionedRequest):
    reason: str = Field(default="", max_length=2000)


class RaiseDisputeRequest(VersionedRequest):
    """Request body for raising a dispute against an escrow."""

    reason: str = Field(
        ...,
        min_length=10,
        max_length=2000,
        description="Detailed reason for the dispute",
    )
    evidence: list[str] = Field(default_factory=list, max_length=20)
    dispute_type: DisputeType = DisputeType.OTHER


class ConfirmPayoutRequest(VersionedRequest):
    reference: str = Field(..., min_length=1, max_length=100)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TimelineEntryResponse(BaseModel):
    status: str
    actor_id: str
    actor_role: str
    note: str
    timestamp: datetime


class EscrowResponse(BaseModel):
    """Response schema for an escrow."""

    id: uuid.UUID
    escrow_id: str
    title: str
    description: str
    amount: Decimal
    currency: str
    buyer_id: str
    seller_id: str
    status: str
    chat_unlocked: bool
    timeline: list[TimelineEntryResponse]
    payment: dict | None
    delivery: dict
    dispute: dict
    settlement: dict | None
    payout_reference: str | None
    version: int
    created_at: datetime
    updated_at: datetime


class EscrowStatusResponse(BaseModel):
    """Lightweight status check response."""

    escrow_id: str
    status: str
    version: int
    chat_unlocked: bool
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class FundingInstructionsResponse(BaseModel):
    escrow_id: str
    reference: str
    authorization_url: str
    access_code: str
    fees: FeeBreakdownResponse


class PayoutResponse(BaseModel):
    escrow_id: str
    reference: str


class AutoReleaseResponse(BaseModel):
    released: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
