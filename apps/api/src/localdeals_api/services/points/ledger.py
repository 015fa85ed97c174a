"""Append-only points ledger with query-time balance derivation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.types import utcnow
from localdeals_api.models.customer import Customer
from localdeals_api.models.points import PointsEntryTypeEnum, PointsLedgerEntry, PointsRedemption
from localdeals_api.observability.claims import get_claims_store
from localdeals_api.services.errors import InvalidLedgerAmountError, NotFoundError

_CREDIT_TYPES = {PointsEntryTypeEnum.EARNED, PointsEntryTypeEnum.BONUS}
_DEBIT_TYPES = {PointsEntryTypeEnum.REDEEMED, PointsEntryTypeEnum.SPEND_CREDIT}


@dataclass(slots=True)
class PointsSummary:
    """Serializable ledger overview for one customer."""

    user_id: UUID
    balance: int
    lifetime_earned: int
    total_redeemed: int
    total_credit: Decimal
    entries: list[PointsLedgerEntry]
    redemptions: list[PointsRedemption]
    min_redeem_points: int
    redeem_unit: int
    points_per_dollar: int
    redeemable_points: int
    max_credit: Decimal
    meets_minimum: bool
    can_redeem: bool


def points_to_credit(points: int, points_per_dollar: int | None = None) -> Decimal:
    rate = points_per_dollar or settings.points_per_dollar
    return (Decimal(points) / Decimal(rate)).quantize(Decimal("0.01"))


class PointsLedgerService:
    """Append entries and derive balances for the points ledger.

    ``append`` only flushes so ledger writes can share a transaction with the
    claim transition or credit redemption that produced them.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session
        self._store = get_claims_store()

    def _expiry_cutoff(self, now: datetime | None) -> datetime | None:
        if settings.points_expiry_days is None:
            return None
        return (now or utcnow()) - timedelta(days=settings.points_expiry_days)

    def _live_filter(self, now: datetime | None):
        cutoff = self._expiry_cutoff(now)
        if cutoff is None:
            return None
        # Debits never age out; only positive grants expire.
        return or_(PointsLedgerEntry.amount < 0, PointsLedgerEntry.created_at >= cutoff)

    async def lock_user(self, user_id: UUID) -> Customer:
        """Take the per-user row lock that linearizes balance checks with appends."""

        stmt = select(Customer).where(Customer.id == user_id).with_for_update()
        customer = (await self._session.execute(stmt)).scalar_one_or_none()
        if customer is None:
            raise NotFoundError("Customer not found.", user_id=str(user_id))
        return customer

    async def append(
        self,
        user_id: UUID,
        amount: int,
        entry_type: PointsEntryTypeEnum,
        description: str,
        *,
        deal_id: UUID | None = None,
        claim_id: UUID | None = None,
        redemption_id: UUID | None = None,
        created_by: str | None = None,
    ) -> PointsLedgerEntry:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise InvalidLedgerAmountError(user_id=str(user_id), amount=amount)
        if entry_type in _CREDIT_TYPES and amount < 0:
            raise InvalidLedgerAmountError(
                f"{entry_type.value} entries must be positive.", user_id=str(user_id), amount=amount
            )
        if entry_type in _DEBIT_TYPES and amount > 0:
            raise InvalidLedgerAmountError(
                f"{entry_type.value} entries must be negative.", user_id=str(user_id), amount=amount
            )

        entry = PointsLedgerEntry(
            user_id=user_id,
            amount=amount,
            entry_type=entry_type,
            description=description,
            deal_id=deal_id,
            claim_id=claim_id,
            redemption_id=redemption_id,
            created_by=created_by,
        )
        self._session.add(entry)
        await self._session.flush()

        self._store.record_points(f"entries:{entry_type.value}")
        logger.info(
            "Points ledger entry appended",
            entry_id=str(entry.id),
            user_id=str(user_id),
            amount=amount,
            entry_type=entry_type.value,
            claim_id=str(claim_id) if claim_id else None,
        )
        return entry

    async def balance(self, user_id: UUID, *, now: datetime | None = None) -> int:
        stmt = select(func.coalesce(func.sum(PointsLedgerEntry.amount), 0)).where(
            PointsLedgerEntry.user_id == user_id
        )
        live = self._live_filter(now)
        if live is not None:
            stmt = stmt.where(live)
        return int((await self._session.execute(stmt)).scalar_one())

    async def issue(
        self,
        user_id: UUID,
        amount: int,
        entry_type: PointsEntryTypeEnum,
        description: str,
        *,
        actor: str,
    ) -> PointsLedgerEntry:
        """Commit an operator-issued bonus or adjustment entry."""

        if entry_type not in {PointsEntryTypeEnum.BONUS, PointsEntryTypeEnum.ADJUSTMENT}:
            raise InvalidLedgerAmountError("Only bonus or adjustment entries can be issued.")
        try:
            await self.lock_user(user_id)
            entry = await self.append(user_id, amount, entry_type, description, created_by=actor)
            await self._session.commit()
        except Exception:
            await self._session.rollback()
            raise
        await self._session.refresh(entry)
        return entry

    async def list_entries(self, user_id: UUID, *, limit: int | None = None) -> list[PointsLedgerEntry]:
        stmt = (
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.user_id == user_id)
            .order_by(PointsLedgerEntry.created_at.desc(), PointsLedgerEntry.id.desc())
            .limit(limit or settings.points_recent_entries_limit)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def list_redemptions(self, user_id: UUID, *, limit: int | None = None) -> list[PointsRedemption]:
        stmt = (
            select(PointsRedemption)
            .where(PointsRedemption.user_id == user_id)
            .order_by(PointsRedemption.created_at.desc(), PointsRedemption.id.desc())
            .limit(limit or settings.points_recent_redemptions_limit)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def summary(self, user_id: UUID, *, now: datetime | None = None) -> PointsSummary:
        balance = await self.balance(user_id, now=now)

        totals_stmt = select(
            func.coalesce(func.sum(case((PointsLedgerEntry.amount > 0, PointsLedgerEntry.amount), else_=0)), 0),
            func.coalesce(
                func.sum(
                    case(
                        (
                            PointsLedgerEntry.entry_type.in_(tuple(_DEBIT_TYPES)),
                            -PointsLedgerEntry.amount,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(PointsLedgerEntry.user_id == user_id)
        lifetime_earned, total_redeemed = (await self._session.execute(totals_stmt)).one()

        credit_stmt = select(func.coalesce(func.sum(PointsRedemption.credit_amount), 0)).where(
            PointsRedemption.user_id == user_id
        )
        total_credit = Decimal(str((await self._session.execute(credit_stmt)).scalar_one())).quantize(
            Decimal("0.01")
        )

        min_redeem = settings.points_min_redeem
        unit = settings.points_redeem_unit
        redeemable = (max(balance, 0) // unit) * unit
        if redeemable < min_redeem:
            redeemable = 0

        return PointsSummary(
            user_id=user_id,
            balance=balance,
            lifetime_earned=int(lifetime_earned),
            total_redeemed=int(total_redeemed),
            total_credit=total_credit,
            entries=await self.list_entries(user_id),
            redemptions=await self.list_redemptions(user_id),
            min_redeem_points=min_redeem,
            redeem_unit=unit,
            points_per_dollar=settings.points_per_dollar,
            redeemable_points=redeemable,
            max_credit=points_to_credit(redeemable),
            meets_minimum=balance >= min_redeem,
            can_redeem=redeemable >= min_redeem,
        )


__all__ = ["PointsLedgerService", "PointsSummary", "points_to_credit"]
