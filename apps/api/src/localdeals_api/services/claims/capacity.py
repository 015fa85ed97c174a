"""Atomic slot accounting against a deal's ``claims_count``."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.models.deal import Deal
from localdeals_api.observability.claims import get_claims_store


@dataclass(slots=True)
class SlotDecision:
    deal_id: UUID
    granted: bool


class CapacityController:
    """Reserve and release capacity slots with single conditional UPDATEs.

    Neither method commits; callers run them inside the transaction that
    performs the matching claim transition so both land or neither does.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session
        self._store = get_claims_store()

    async def try_reserve_slot(self, deal_id: UUID) -> SlotDecision:
        stmt = (
            update(Deal)
            .where(
                Deal.id == deal_id,
                or_(Deal.max_claims.is_(None), Deal.claims_count < Deal.max_claims),
            )
            .values(claims_count=Deal.claims_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        granted = result.rowcount == 1
        self._store.record_capacity_decision(granted)
        if granted:
            logger.info("Capacity slot reserved", deal_id=str(deal_id))
        else:
            logger.info("Capacity slot denied", deal_id=str(deal_id))
        return SlotDecision(deal_id=deal_id, granted=granted)

    async def release_slot(self, deal_id: UUID) -> bool:
        """Give back a slot held by a confirmed claim; never drops below zero."""

        stmt = (
            update(Deal)
            .where(Deal.id == deal_id, Deal.claims_count > 0)
            .values(claims_count=Deal.claims_count - 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        released = result.rowcount == 1
        if released:
            self._store.record_capacity_release()
            logger.info("Capacity slot released", deal_id=str(deal_id))
        else:
            logger.warning("Capacity release found no slot to free", deal_id=str(deal_id))
        return released


__all__ = ["CapacityController", "SlotDecision"]
