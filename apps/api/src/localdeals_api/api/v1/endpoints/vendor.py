"""Vendor actions for claims paid directly to the business."""

from __future__ import annotations

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.api.dependencies.identity import Identity, require_vendor
from localdeals_api.api.v1.endpoints.claims import ClaimResponse, serialize_claim
from localdeals_api.db.session import get_session
from localdeals_api.models.claim import ConfirmationSourceEnum
from localdeals_api.services.claims.lifecycle import ClaimLifecycleService
from localdeals_api.services.claims.queries import ClaimQueryService


router = APIRouter(prefix="/vendor", tags=["vendor"])


class PaymentConfirmationResponse(BaseModel):
    claim: ClaimResponse
    changed: bool


@router.get("/pending-confirmations", response_model=List[ClaimResponse])
async def list_pending_confirmations(
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(require_vendor),
    db: AsyncSession = Depends(get_session),
) -> List[ClaimResponse]:
    claims = await ClaimQueryService(db).list_pending_confirmations(identity.user_id, limit=limit)
    return [serialize_claim(claim, include_proof=False) for claim in claims]


@router.post("/claims/{claim_id}/confirm-payment", response_model=PaymentConfirmationResponse)
async def confirm_payment(
    claim_id: UUID,
    identity: Identity = Depends(require_vendor),
    db: AsyncSession = Depends(get_session),
) -> PaymentConfirmationResponse:
    """Confirm a deposit received in person. Repeating the call is a no-op."""

    result = await ClaimLifecycleService(db).confirm_payment(
        claim_id,
        source=ConfirmationSourceEnum.VENDOR,
        vendor_id=identity.user_id,
    )
    return PaymentConfirmationResponse(
        claim=serialize_claim(result.claim, include_proof=False),
        changed=result.changed,
    )
