"""Pydantic schemas for the admin dispute API."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from escrow_marketplace.domain.enums import DisputeResolution, DisputeWinner


class ResolveDisputeRequest(BaseModel):
    resolution: DisputeResolution
    winner: DisputeWinner
    refund_percentage: Decimal | None = Field(
        default=None,
        description="Share of the amount refunded to the buyer; clamped to 0-100, default 100",
    )
    notes: str = Field(default="", max_length=2000)


class DisputeHistoryResponse(BaseModel):
    action: str
    actor_id: str
    note: str
    timestamp: datetime


class DisputeResponse(BaseModel):
    id: uuid.UUID
    dispute_id: str
    escrow_id: str
    reported_by: str
    reported_user: str
    reporter_role: str
    dispute_type: str
    description: str
    evidence: list[str]
    status: str
    assigned_to: str | None
    assigned_at: datetime | None
    resolution: str | None
    winner: str | None
    refund_percentage: Decimal | None
    resolved_by: str | None
    resolved_at: datetime | None
    resolution_notes: str
    history: list[DisputeHistoryResponse]
    version: int
    created_at: datetime
    updated_at: datetime
