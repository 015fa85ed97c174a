"""Points ledger summary, credit redemption and operator issuance."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.api.dependencies.identity import Identity, require_admin, require_customer
from localdeals_api.db.session import get_session
from localdeals_api.models.points import PointsEntryTypeEnum, PointsLedgerEntry, PointsRedemption
from localdeals_api.services.points.credit import PointsCreditService
from localdeals_api.services.points.ledger import PointsLedgerService


router = APIRouter(prefix="/points", tags=["points"])


class LedgerEntryResponse(BaseModel):
    id: UUID
    amount: int
    entryType: str
    description: str
    dealId: Optional[UUID]
    claimId: Optional[UUID]
    redemptionId: Optional[UUID]
    createdAt: datetime


class PointsRedemptionResponse(BaseModel):
    id: UUID
    pointsUsed: int
    creditAmount: Decimal
    createdAt: datetime


class PointsSummaryResponse(BaseModel):
    balance: int
    lifetimeEarned: int
    totalRedeemed: int
    totalCredit: Decimal
    minRedeemPoints: int
    redeemUnit: int
    pointsPerDollar: int
    redeemablePoints: int
    maxCredit: Decimal
    meetsMinimum: bool
    canRedeem: bool
    entries: List[LedgerEntryResponse]
    redemptions: List[PointsRedemptionResponse]


class PointsRedeemRequest(BaseModel):
    points: int = Field(..., description="Points to convert to account credit")


class PointsRedeemResponse(BaseModel):
    redemption: PointsRedemptionResponse
    creditAmount: Decimal
    newBalance: int


class PointsIssueRequest(BaseModel):
    userId: UUID
    amount: int = Field(..., description="Signed amount; bonuses must be positive")
    entryType: Literal["bonus", "adjustment"] = "bonus"
    description: str = Field(..., min_length=1, max_length=500)


def _entry_response(entry: PointsLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        amount=entry.amount,
        entryType=entry.entry_type.value,
        description=entry.description,
        dealId=entry.deal_id,
        claimId=entry.claim_id,
        redemptionId=entry.redemption_id,
        createdAt=entry.created_at,
    )


def _redemption_response(redemption: PointsRedemption) -> PointsRedemptionResponse:
    return PointsRedemptionResponse(
        id=redemption.id,
        pointsUsed=redemption.points_used,
        creditAmount=redemption.credit_amount,
        createdAt=redemption.created_at,
    )


@router.get("", response_model=PointsSummaryResponse)
async def get_points_summary(
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    summary = await PointsLedgerService(db).summary(identity.user_id)
    return PointsSummaryResponse(
        balance=summary.balance,
        lifetimeEarned=summary.lifetime_earned,
        totalRedeemed=summary.total_redeemed,
        totalCredit=summary.total_credit,
        minRedeemPoints=summary.min_redeem_points,
        redeemUnit=summary.redeem_unit,
        pointsPerDollar=summary.points_per_dollar,
        redeemablePoints=summary.redeemable_points,
        maxCredit=summary.max_credit,
        meetsMinimum=summary.meets_minimum,
        canRedeem=summary.can_redeem,
        entries=[_entry_response(entry) for entry in summary.entries],
        redemptions=[_redemption_response(item) for item in summary.redemptions],
    )


@router.post("/redeem", response_model=PointsRedeemResponse)
async def redeem_points(
    payload: PointsRedeemRequest,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> PointsRedeemResponse:
    result = await PointsCreditService(db).redeem(identity.user_id, payload.points)
    return PointsRedeemResponse(
        redemption=_redemption_response(result.redemption),
        creditAmount=result.credit_amount,
        newBalance=result.new_balance,
    )


@router.post("/admin/issue", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def issue_points(
    payload: PointsIssueRequest,
    identity: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> LedgerEntryResponse:
    """Append a bonus or corrective adjustment entry for a customer."""

    entry = await PointsLedgerService(db).issue(
        payload.userId,
        payload.amount,
        PointsEntryTypeEnum(payload.entryType),
        payload.description,
        actor=str(identity.user_id),
    )
    return _entry_response(entry)
