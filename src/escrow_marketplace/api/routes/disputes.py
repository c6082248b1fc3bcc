"""Admin dispute routes. The admin is identified by the X-Admin-ID header.

Routes:
    GET    /api/v1/disputes/{id}          — Get a dispute
    POST   /api/v1/disputes/{id}/assign   — Assign to the calling admin
    POST   /api/v1/disputes/{id}/resolve  — Resolve and settle the escrow
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from escrow_marketplace.api.deps import get_current_admin_id, get_dispute_service
from escrow_marketplace.domain.disputes import Dispute
from escrow_marketplace.schemas.dispute import DisputeResponse, ResolveDisputeRequest
from escrow_marketplace.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])


def _to_response(dispute: Dispute) -> DisputeResponse:
    return DisputeResponse.model_validate(dispute.to_dict())


@router.get("/{dispute_id}", response_model=DisputeResponse, summary="Get a dispute")
async def get_dispute(
    dispute_id: str,
    admin_id: str = Depends(get_current_admin_id),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return _to_response(await svc.get_dispute(dispute_id))


@router.post(
    "/{dispute_id}/assign",
    response_model=DisputeResponse,
    summary="Assign a dispute to the calling admin",
)
async def assign_dispute(
    dispute_id: str,
    admin_id: str = Depends(get_current_admin_id),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    return _to_response(await svc.assign_dispute(dispute_id, admin_id))


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: str,
    request: ResolveDisputeRequest,
    admin_id: str = Depends(get_current_admin_id),
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Record the ruling. The parent escrow moves to completed or cancelled."""
    dispute = await svc.resolve_dispute(
        dispute_id,
        admin_id,
        resolution=request.resolution,
        winner=request.winner,
        refund_percentage=request.refund_percentage,
        notes=request.notes,
    )
    return _to_response(dispute)
