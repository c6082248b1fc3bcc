"""Escrow REST API routes.

The caller is identified by the X-User-ID header; guards on who may act
(buyer vs seller) are enforced in the service layer.

Routes:
    POST   /api/v1/escrows                       — Create an escrow (caller is buyer)
    GET    /api/v1/escrows                       — List the caller's escrows
    POST   /api/v1/escrows/auto-release          — Release every due escrow
    GET    /api/v1/escrows/{id}                  — Get escrow details
    GET    /api/v1/escrows/{id}/status           — Status + allowed events
    GET    /api/v1/escrows/{id}/timeline         — Audit trail
    POST   /api/v1/escrows/{id}/accept           — Seller accepts
    POST   /api/v1/escrows/{id}/funding          — Open a gateway payment (phase 1)
    POST   /api/v1/escrows/{id}/fund             — Confirm payment, snapshot fees (phase 2)
    POST   /api/v1/escrows/{id}/delivery         — Seller submits delivery proof
    POST   /api/v1/escrows/{id}/confirm          — Buyer confirms receipt
    POST   /api/v1/escrows/{id}/cancel           — Either party cancels
    POST   /api/v1/escrows/{id}/dispute          — Either party raises a dispute
    POST   /api/v1/escrows/{id}/release          — Auto-release if due
    POST   /api/v1/escrows/{id}/payout           — Start the seller payout (phase 1)
    POST   /api/v1/escrows/{id}/payout/confirm   — Confirm the payout (phase 2)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from escrow_marketplace.api.deps import (
    get_app_settings,
    get_current_user_id,
    get_escrow_service,
)
from escrow_marketplace.config import Settings
from escrow_marketplace.domain.models import DeliveryProof, Escrow
from escrow_marketplace.logging_config import get_logger
from escrow_marketplace.schemas.escrow import (
    AutoReleaseResponse,
    CancelEscrowRequest,
    ConfirmPayoutRequest,
    CreateEscrowRequest,
    EscrowResponse,
    EscrowStatusResponse,
    FundEscrowRequest,
    FundingInstructionsResponse,
    PayoutResponse,
    RaiseDisputeRequest,
    SubmitDeliveryRequest,
    TimelineEntryResponse,
    VersionedRequest,
)
from escrow_marketplace.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/escrows", tags=["Escrows"])
logger = get_logger(__name__)


def _to_response(escrow: Escrow) -> EscrowResponse:
    return EscrowResponse.model_validate(escrow.to_dict())


def _version(body: VersionedRequest | None) -> int | None:
    return body.expected_version if body is not None else None


# ---------------------------------------------------------------------------
# Create & list
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=EscrowResponse,
    status_code=201,
    summary="Create a new escrow",
)
async def create_escrow(
    request: CreateEscrowRequest,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Create a new escrow in `pending`. Fails 403 if the Verification Gate denies the buyer."""
    escrow = await svc.create_escrow(
        buyer_id=user_id,
        seller_email=request.seller_email,
        amount=request.amount,
        currency=request.currency,
        title=request.title,
        description=request.description,
        delivery_method=request.delivery_method,
        auto_release_days=request.auto_release_days,
        auto_release_enabled=request.auto_release_enabled,
    )
    return _to_response(escrow)


@router.get("", response_model=list[EscrowResponse], summary="List the caller's escrows")
async def list_escrows(
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> list[EscrowResponse]:
    return [_to_response(e) for e in await svc.list_escrows(user_id)]


@router.post(
    "/auto-release",
    response_model=AutoReleaseResponse,
    summary="Release every escrow whose auto-release time has passed",
)
async def release_due_escrows(
    svc: EscrowService = Depends(get_escrow_service),
    settings: Settings = Depends(get_app_settings),
) -> AutoReleaseResponse:
    released = await svc.release_due_escrows(limit=settings.auto_release_batch_size)
    return AutoReleaseResponse(released=[e.escrow_id for e in released])


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get("/{escrow_id}", response_model=EscrowResponse, summary="Get escrow details")
async def get_escrow(
    escrow_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return _to_response(await svc.get_escrow(escrow_id))


@router.get(
    "/{escrow_id}/status",
    response_model=EscrowStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    escrow_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowStatusResponse:
    """Return the current status, version and allowed next events."""
    return EscrowStatusResponse(**await svc.get_status(escrow_id))


@router.get(
    "/{escrow_id}/timeline",
    response_model=list[TimelineEntryResponse],
    summary="Get audit trail",
)
async def get_timeline(
    escrow_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[TimelineEntryResponse]:
    entries = await svc.get_timeline(escrow_id)
    return [TimelineEntryResponse.model_validate(entry.to_dict()) for entry in entries]


# ---------------------------------------------------------------------------
# Acceptance & funding
# ---------------------------------------------------------------------------


@router.post("/{escrow_id}/accept", response_model=EscrowResponse, summary="Seller accepts")
async def accept_escrow(
    escrow_id: str,
    body: VersionedRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    escrow = await svc.accept_escrow(escrow_id, user_id, expected_version=_version(body))
    return _to_response(escrow)


@router.post(
    "/{escrow_id}/funding",
    response_model=FundingInstructionsResponse,
    summary="Open a gateway payment for the buyer",
)
async def initialize_funding(
    escrow_id: str,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> FundingInstructionsResponse:
    instructions = await svc.initialize_funding(escrow_id, user_id)
    return FundingInstructionsResponse.model_validate(instructions.to_dict())


@router.post(
    "/{escrow_id}/fund",
    response_model=EscrowResponse,
    summary="Confirm payment and fund the escrow",
)
async def fund_escrow(
    escrow_id: str,
    request: FundEscrowRequest,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Verify the payment reference at the gateway. Transitions pending/accepted -> funded."""
    escrow = await svc.fund_escrow(
        escrow_id,
        user_id,
        request.payment_reference,
        payment_method=request.payment_method,
        expected_version=request.expected_version,
    )
    return _to_response(escrow)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/delivery",
    response_model=EscrowResponse,
    summary="Submit delivery proof",
)
async def submit_delivery(
    escrow_id: str,
    request: SubmitDeliveryRequest,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    proof = DeliveryProof(
        proof_type=request.proof_type,
        value=request.value,
        description=request.description,
    )
    escrow = await svc.submit_delivery(
        escrow_id, user_id, proof, expected_version=request.expected_version
    )
    return _to_response(escrow)


@router.post("/{escrow_id}/confirm", response_model=EscrowResponse, summary="Confirm receipt")
async def confirm_delivery(
    escrow_id: str,
    body: VersionedRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    escrow = await svc.confirm_delivery(escrow_id, user_id, expected_version=_version(body))
    return _to_response(escrow)


@router.post(
    "/{escrow_id}/release",
    response_model=EscrowResponse,
    summary="Auto-release a delivered escrow if due",
)
async def release_if_due(
    escrow_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return _to_response(await svc.release_if_due(escrow_id))


# ---------------------------------------------------------------------------
# Cancellation & disputes
# ---------------------------------------------------------------------------


@router.post("/{escrow_id}/cancel", response_model=EscrowResponse, summary="Cancel an escrow")
async def cancel_escrow(
    escrow_id: str,
    request: CancelEscrowRequest,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    escrow = await svc.cancel_escrow(
        escrow_id, user_id, request.reason, expected_version=request.expected_version
    )
    return _to_response(escrow)


@router.post("/{escrow_id}/dispute", response_model=EscrowResponse, summary="Raise a dispute")
async def raise_dispute(
    escrow_id: str,
    request: RaiseDisputeRequest,
    user_id: str = Depends(get_current_user_id),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Raise a dispute. Valid from funded or delivered."""
    escrow = await svc.raise_dispute(
        escrow_id,
        user_id,
        request.reason,
        evidence=request.evidence,
        dispute_type=request.dispute_type,
        expected_version=request.expected_version,
    )
    return _to_response(escrow)


# ---------------------------------------------------------------------------
# Payout
# ---------------------------------------------------------------------------


@router.post("/{escrow_id}/payout", response_model=PayoutResponse, summary="Start seller payout")
async def request_payout(
    escrow_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> PayoutResponse:
    reference = await svc.request_payout(escrow_id)
    return PayoutResponse(escrow_id=escrow_id, reference=reference)


@router.post(
    "/{escrow_id}/payout/confirm",
    response_model=EscrowResponse,
    summary="Confirm seller payout",
)
async def confirm_payout(
    escrow_id: str,
    request: ConfirmPayoutRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    escrow = await svc.confirm_payout(
        escrow_id, request.reference, expected_version=request.expected_version
    )
    return _to_response(escrow)
