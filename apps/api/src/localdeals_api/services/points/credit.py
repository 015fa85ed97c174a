"""Points-for-credit conversion under ledger discipline."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.models.points import PointsEntryTypeEnum, PointsRedemption
from localdeals_api.observability.claims import get_claims_store
from localdeals_api.observability.tracing import get_tracer
from localdeals_api.services.errors import (
    BelowMinimumRedemptionError,
    ClaimsDomainError,
    InsufficientBalanceError,
    NotAMultipleOfUnitError,
)
from localdeals_api.services.points.ledger import PointsLedgerService, points_to_credit


@dataclass(slots=True)
class CreditRedemptionResult:
    redemption: PointsRedemption
    credit_amount: Decimal
    new_balance: int


class PointsCreditService:
    """Convert points to account credit in one transaction."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session
        self._ledger = PointsLedgerService(db_session)
        self._store = get_claims_store()

    def validate_request(self, points: int) -> None:
        if points < settings.points_min_redeem:
            raise BelowMinimumRedemptionError(
                f"Minimum redemption is {settings.points_min_redeem} points.", points=points
            )
        if points % settings.points_redeem_unit != 0:
            raise NotAMultipleOfUnitError(
                f"Points must be redeemed in multiples of {settings.points_redeem_unit}.", points=points
            )

    async def redeem(self, user_id: UUID, points: int) -> CreditRedemptionResult:
        """Validate, debit the ledger and record the redemption, or change nothing."""

        with get_tracer().start_as_current_span("points.redeem_credit") as span:
            span.set_attribute("points.user_id", str(user_id))
            span.set_attribute("points.requested", points)
            try:
                self.validate_request(points)
                await self._ledger.lock_user(user_id)
                balance = await self._ledger.balance(user_id)
                if balance < points:
                    raise InsufficientBalanceError(
                        f"Insufficient balance. You have {balance} points available.",
                        balance=balance,
                        points=points,
                    )

                credit_amount = points_to_credit(points)
                redemption = PointsRedemption(user_id=user_id, points_used=points, credit_amount=credit_amount)
                self._session.add(redemption)
                await self._session.flush()

                await self._ledger.append(
                    user_id,
                    -points,
                    PointsEntryTypeEnum.SPEND_CREDIT,
                    f"Redeemed {points} points for ${credit_amount} credit",
                    redemption_id=redemption.id,
                    created_by=str(user_id),
                )
                await self._session.commit()
            except ClaimsDomainError as error:
                await self._session.rollback()
                self._store.record_transition("points.redeem_credit", error.code)
                logger.info(
                    "Points credit redemption rejected",
                    user_id=str(user_id),
                    points=points,
                    code=error.code,
                )
                raise
            except Exception:
                await self._session.rollback()
                self._store.record_transition("points.redeem_credit", "error")
                logger.exception("Points credit redemption failed", user_id=str(user_id), points=points)
                raise

            new_balance = await self._ledger.balance(user_id)

        self._store.record_transition("points.redeem_credit", "success")
        self._store.record_points("credit_redemptions")
        logger.info(
            "Points redeemed for credit",
            user_id=str(user_id),
            redemption_id=str(redemption.id),
            points=points,
            credit_amount=str(credit_amount),
            new_balance=new_balance,
        )
        return CreditRedemptionResult(redemption=redemption, credit_amount=credit_amount, new_balance=new_balance)


__all__ = ["CreditRedemptionResult", "PointsCreditService"]
