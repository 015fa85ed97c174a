"""Scan-token resolution and in-store redemption."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.api.dependencies.identity import Identity, require_identity, require_vendor
from localdeals_api.db.session import get_session
from localdeals_api.models.deal import Deal
from localdeals_api.services.claims.lifecycle import ClaimLifecycleService


router = APIRouter(prefix="/redeem", tags=["redemption"])


class DealSummary(BaseModel):
    id: UUID
    title: str
    originalPrice: Decimal
    dealPrice: Decimal
    depositAmount: Optional[Decimal]


class ProofStatusResponse(BaseModel):
    claimId: UUID
    status: str
    depositConfirmed: bool
    redeemedAt: Optional[datetime]
    expiresAt: datetime
    remainingBalance: Decimal
    deal: DealSummary


class RedemptionResponse(BaseModel):
    claimId: UUID
    status: str
    redeemedAt: datetime
    remainingBalance: Decimal
    deal: DealSummary


def _deal_summary(deal: Deal) -> DealSummary:
    return DealSummary(
        id=deal.id,
        title=deal.title,
        originalPrice=deal.original_price,
        dealPrice=deal.deal_price,
        depositAmount=deal.deposit_amount,
    )


@router.get("/{proof}", response_model=ProofStatusResponse)
async def resolve_proof(
    proof: str,
    identity: Identity = Depends(require_identity),
    db: AsyncSession = Depends(get_session),
) -> ProofStatusResponse:
    """Look up a scan token or redemption code without changing anything."""

    resolution = await ClaimLifecycleService(db).resolve_proof(proof)
    return ProofStatusResponse(
        claimId=resolution.claim.id,
        status=resolution.status,
        depositConfirmed=resolution.claim.deposit_confirmed,
        redeemedAt=resolution.claim.redeemed_at,
        expiresAt=resolution.claim.expires_at,
        remainingBalance=resolution.remaining_balance,
        deal=_deal_summary(resolution.deal),
    )


@router.post("/{proof}", response_model=RedemptionResponse)
async def redeem_proof(
    proof: str,
    identity: Identity = Depends(require_vendor),
    db: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    """Redeem a claim at the vendor's counter. A second scan is rejected."""

    result = await ClaimLifecycleService(db).redeem(
        proof,
        vendor_id=identity.user_id,
        bypass_ownership=identity.is_admin,
    )
    return RedemptionResponse(
        claimId=result.claim.id,
        status="redeemed",
        redeemedAt=result.claim.redeemed_at,
        remainingBalance=result.remaining_balance,
        deal=_deal_summary(result.deal),
    )
