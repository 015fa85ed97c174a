"""Read projections over claims, transfers and deal capacity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.db.types import utcnow
from localdeals_api.models.claim import Claim, ClaimTransfer
from localdeals_api.models.deal import Deal, PaymentTierEnum
from localdeals_api.services.errors import (
    DepositAlreadyConfirmedError,
    ExpiredError,
    NotFoundError,
    NotOwnerError,
    PaymentTierMismatchError,
)

ClaimListStatus = Literal["active", "pending", "expired", "redeemed"]


@dataclass(slots=True)
class DealCapacitySnapshot:
    deal_id: UUID
    max_claims: int | None
    claims_count: int
    remaining: int | None
    confirmed_expired_unredeemed: int


class ClaimQueryService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session

    async def get_claim(self, claim_id: UUID, *, customer_id: UUID) -> Claim:
        stmt = select(Claim).where(Claim.id == claim_id, Claim.cancelled_at.is_(None))
        claim = (await self._session.execute(stmt)).unique().scalar_one_or_none()
        if claim is None:
            raise NotFoundError(claim_id=str(claim_id))
        if claim.customer_id != customer_id:
            raise NotOwnerError(claim_id=str(claim_id))
        return claim

    async def get_checkout_claim(self, claim_id: UUID, *, customer_id: UUID, now: datetime | None = None) -> Claim:
        """Owned claim that still awaits a platform-collected deposit."""

        claim = await self.get_claim(claim_id, customer_id=customer_id)
        if claim.deposit_confirmed:
            raise DepositAlreadyConfirmedError(claim_id=str(claim_id))
        if claim.payment_tier != PaymentTierEnum.INTEGRATED:
            raise PaymentTierMismatchError(
                "This claim's deposit is collected by the vendor.", claim_id=str(claim_id)
            )
        if claim.expires_at <= (now or utcnow()):
            raise ExpiredError(claim_id=str(claim_id))
        return claim

    async def list_customer_claims(
        self,
        customer_id: UUID,
        *,
        status: ClaimListStatus | None = None,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[Claim]:
        """Customer's claims, newest first.

        ``active`` is confirmed and usable, ``pending`` awaits its deposit,
        ``expired`` lapsed unredeemed, ``redeemed`` was used.
        """

        moment = now or utcnow()
        stmt = select(Claim).where(Claim.customer_id == customer_id, Claim.cancelled_at.is_(None))
        if status == "active":
            stmt = stmt.where(
                Claim.deposit_confirmed.is_(True),
                Claim.redeemed.is_(False),
                Claim.expires_at > moment,
            )
        elif status == "pending":
            stmt = stmt.where(
                Claim.deposit_confirmed.is_(False),
                Claim.redeemed.is_(False),
                Claim.expires_at > moment,
            )
        elif status == "expired":
            stmt = stmt.where(Claim.redeemed.is_(False), Claim.expires_at <= moment)
        elif status == "redeemed":
            stmt = stmt.where(Claim.redeemed.is_(True))
        stmt = stmt.order_by(Claim.created_at.desc()).limit(limit)
        return list((await self._session.execute(stmt)).unique().scalars().all())

    async def list_pending_confirmations(
        self,
        vendor_id: UUID,
        *,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[Claim]:
        """Manual-tier claims on the vendor's deals still waiting for the vendor to confirm payment."""

        moment = now or utcnow()
        stmt = (
            select(Claim)
            .join(Deal, Deal.id == Claim.deal_id)
            .where(
                Deal.vendor_id == vendor_id,
                Claim.payment_tier == PaymentTierEnum.MANUAL,
                Claim.deposit_confirmed.is_(False),
                Claim.cancelled_at.is_(None),
                Claim.expires_at > moment,
            )
            .order_by(Claim.created_at.asc())
            .limit(limit)
        )
        return list((await self._session.execute(stmt)).unique().scalars().all())

    async def list_transfers(self, claim_id: UUID, *, requester_id: UUID) -> list[ClaimTransfer]:
        """Chain of custody, visible to the current owner and any previous owner."""

        claim = (
            await self._session.execute(select(Claim).where(Claim.id == claim_id))
        ).unique().scalar_one_or_none()
        if claim is None:
            raise NotFoundError(claim_id=str(claim_id))

        stmt = select(ClaimTransfer).where(ClaimTransfer.claim_id == claim_id).order_by(ClaimTransfer.created_at.asc())
        transfers = list((await self._session.execute(stmt)).scalars().all())

        participants = {claim.customer_id}
        for transfer in transfers:
            participants.add(transfer.from_customer_id)
            participants.add(transfer.to_customer_id)
        if requester_id not in participants:
            raise NotOwnerError(claim_id=str(claim_id))
        return transfers

    async def deal_capacity(
        self,
        deal_id: UUID,
        *,
        vendor_id: UUID | None = None,
        now: datetime | None = None,
    ) -> DealCapacitySnapshot:
        moment = now or utcnow()
        stmt = select(Deal).where(Deal.id == deal_id).execution_options(populate_existing=True)
        deal = (await self._session.execute(stmt)).scalar_one_or_none()
        if deal is None:
            raise NotFoundError("Deal not found.", deal_id=str(deal_id))
        if vendor_id is not None and deal.vendor_id != vendor_id:
            raise NotOwnerError("You do not manage this deal.", deal_id=str(deal_id))

        # Slots held by confirmed claims that lapsed unredeemed stay counted; report them.
        lapsed_stmt = (
            select(func.count())
            .select_from(Claim)
            .where(
                Claim.deal_id == deal_id,
                Claim.deposit_confirmed.is_(True),
                Claim.redeemed.is_(False),
                Claim.cancelled_at.is_(None),
                Claim.expires_at <= moment,
            )
        )
        lapsed = (await self._session.execute(lapsed_stmt)).scalar_one()

        remaining = None
        if deal.max_claims is not None:
            remaining = max(deal.max_claims - deal.claims_count, 0)
        return DealCapacitySnapshot(
            deal_id=deal.id,
            max_claims=deal.max_claims,
            claims_count=deal.claims_count,
            remaining=remaining,
            confirmed_expired_unredeemed=int(lapsed),
        )


async def count_confirmed_claims(session: AsyncSession, deal_id: UUID) -> int:
    """Claims that have consumed a slot and still hold it."""

    stmt = (
        select(func.count())
        .select_from(Claim)
        .where(
            Claim.deal_id == deal_id,
            Claim.deposit_confirmed.is_(True),
            Claim.cancelled_at.is_(None),
        )
    )
    return int((await session.execute(stmt)).scalar_one())


__all__ = ["ClaimListStatus", "ClaimQueryService", "DealCapacitySnapshot", "count_confirmed_claims"]
