from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.api.dependencies.identity import Identity, require_vendor
from localdeals_api.db.session import get_session
from localdeals_api.services.claims.queries import ClaimQueryService


router = APIRouter(prefix="/deals", tags=["deals"])


class DealCapacityResponse(BaseModel):
    dealId: UUID
    maxClaims: Optional[int]
    claimsCount: int
    remaining: Optional[int]
    confirmedExpiredUnredeemed: int


@router.get("/{deal_id}/capacity", response_model=DealCapacityResponse)
async def get_deal_capacity(
    deal_id: UUID,
    identity: Identity = Depends(require_vendor),
    db: AsyncSession = Depends(get_session),
) -> DealCapacityResponse:
    snapshot = await ClaimQueryService(db).deal_capacity(
        deal_id,
        vendor_id=None if identity.is_admin else identity.user_id,
    )
    return DealCapacityResponse(
        dealId=snapshot.deal_id,
        maxClaims=snapshot.max_claims,
        claimsCount=snapshot.claims_count,
        remaining=snapshot.remaining,
        confirmedExpiredUnredeemed=snapshot.confirmed_expired_unredeemed,
    )
