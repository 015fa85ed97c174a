"""Customer-facing claim endpoints: reserve, pay, inspect, cancel and transfer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.api.dependencies.identity import Identity, require_customer
from localdeals_api.core.settings import settings
from localdeals_api.db.session import get_session
from localdeals_api.db.types import utcnow
from localdeals_api.models.claim import Claim, ClaimTransfer
from localdeals_api.models.deal import Deal, PaymentTierEnum
from localdeals_api.services.claims.lifecycle import ClaimLifecycleService
from localdeals_api.services.claims.queries import ClaimQueryService
from localdeals_api.services.claims.tokens import build_scan_url
from localdeals_api.services.payments.stripe_service import StripeDepositService


router = APIRouter(prefix="/claims", tags=["claims"])


class ClaimResponse(BaseModel):
    id: UUID
    dealId: UUID
    customerId: UUID
    status: str
    paymentTier: str
    depositConfirmed: bool
    depositConfirmedAt: Optional[datetime]
    redeemed: bool
    redeemedAt: Optional[datetime]
    expiresAt: datetime
    createdAt: datetime
    scanToken: Optional[str] = None
    redemptionCode: Optional[str] = None
    scanUrl: Optional[str] = None


class ClaimCreateRequest(BaseModel):
    dealId: UUID = Field(..., description="Deal to reserve")


class ClaimCreateResponse(BaseModel):
    claim: ClaimResponse
    checkoutUrl: Optional[str] = Field(None, description="Hosted deposit checkout for integrated-tier deals")


class ClaimCancelResponse(BaseModel):
    claim: ClaimResponse
    slotReleased: bool


class ClaimTransferRequest(BaseModel):
    recipientEmail: str = Field(..., min_length=3, max_length=320, description="Email of the receiving customer")


class ClaimTransferResponse(BaseModel):
    id: UUID
    claimId: UUID
    fromCustomerId: UUID
    toCustomerId: UUID
    createdAt: datetime


def serialize_claim(claim: Claim, *, include_proof: bool = True, now: datetime | None = None) -> ClaimResponse:
    response = ClaimResponse(
        id=claim.id,
        dealId=claim.deal_id,
        customerId=claim.customer_id,
        status=claim.state_at(now or utcnow()).value,
        paymentTier=claim.payment_tier.value,
        depositConfirmed=claim.deposit_confirmed,
        depositConfirmedAt=claim.deposit_confirmed_at,
        redeemed=claim.redeemed,
        redeemedAt=claim.redeemed_at,
        expiresAt=claim.expires_at,
        createdAt=claim.created_at,
    )
    if include_proof and claim.scan_token:
        response.scanToken = claim.scan_token
        response.redemptionCode = claim.redemption_code
        response.scanUrl = build_scan_url(settings.frontend_url, claim.scan_token)
    return response


def serialize_transfer(record: ClaimTransfer) -> ClaimTransferResponse:
    return ClaimTransferResponse(
        id=record.id,
        claimId=record.claim_id,
        fromCustomerId=record.from_customer_id,
        toCustomerId=record.to_customer_id,
        createdAt=record.created_at,
    )


async def _open_deposit_checkout(
    db: AsyncSession,
    claim: Claim,
    deal: Deal,
    identity: Identity,
) -> str | None:
    if claim.deposit_confirmed or deal.payment_tier != PaymentTierEnum.INTEGRATED or not deal.requires_deposit:
        return None

    stripe_service = StripeDepositService()
    if not stripe_service.is_configured:
        logger.warning("Stripe is not configured; deposit checkout skipped", claim_id=str(claim.id))
        return None

    session = await stripe_service.create_deposit_session(claim, deal, customer_email=identity.email)
    claim.checkout_session_id = session.id
    await db.commit()
    return session.url


@router.post("", response_model=ClaimCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_claim(
    payload: ClaimCreateRequest,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> ClaimCreateResponse:
    """Reserve a deal. Deposit-free deals come back already confirmed with proof tokens."""

    claim = await ClaimLifecycleService(db).create_claim(payload.dealId, identity.user_id)
    checkout_url = await _open_deposit_checkout(db, claim, claim.deal, identity)
    return ClaimCreateResponse(claim=serialize_claim(claim), checkoutUrl=checkout_url)


@router.get("", response_model=List[ClaimResponse])
async def list_claims(
    claim_status: Optional[Literal["active", "pending", "expired", "redeemed"]] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> List[ClaimResponse]:
    now = utcnow()
    claims = await ClaimQueryService(db).list_customer_claims(
        identity.user_id, status=claim_status, now=now, limit=limit
    )
    return [serialize_claim(claim, now=now) for claim in claims]


@router.get("/{claim_id}", response_model=ClaimResponse)
async def get_claim(
    claim_id: UUID,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> ClaimResponse:
    claim = await ClaimQueryService(db).get_claim(claim_id, customer_id=identity.user_id)
    return serialize_claim(claim)


@router.post("/{claim_id}/checkout", response_model=ClaimCreateResponse)
async def reopen_deposit_checkout(
    claim_id: UUID,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> ClaimCreateResponse:
    """Open a fresh deposit checkout for a pending integrated-tier claim."""

    claim = await ClaimQueryService(db).get_checkout_claim(claim_id, customer_id=identity.user_id)
    checkout_url = await _open_deposit_checkout(db, claim, claim.deal, identity)
    return ClaimCreateResponse(claim=serialize_claim(claim), checkoutUrl=checkout_url)


@router.post("/{claim_id}/cancel", response_model=ClaimCancelResponse)
async def cancel_claim(
    claim_id: UUID,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> ClaimCancelResponse:
    """Void the claim. Deposits are non-refundable; a confirmed claim frees its slot."""

    result = await ClaimLifecycleService(db).cancel(claim_id, customer_id=identity.user_id)
    return ClaimCancelResponse(
        claim=serialize_claim(result.claim, include_proof=False),
        slotReleased=result.slot_released,
    )


@router.post("/{claim_id}/transfer", response_model=ClaimTransferResponse)
async def transfer_claim(
    claim_id: UUID,
    payload: ClaimTransferRequest,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> ClaimTransferResponse:
    record = await ClaimLifecycleService(db).transfer(
        claim_id,
        from_customer_id=identity.user_id,
        recipient_email=payload.recipientEmail,
    )
    return serialize_transfer(record)


@router.get("/{claim_id}/transfers", response_model=List[ClaimTransferResponse])
async def list_claim_transfers(
    claim_id: UUID,
    identity: Identity = Depends(require_customer),
    db: AsyncSession = Depends(get_session),
) -> List[ClaimTransferResponse]:
    transfers = await ClaimQueryService(db).list_transfers(claim_id, requester_id=identity.user_id)
    return [serialize_transfer(record) for record in transfers]
