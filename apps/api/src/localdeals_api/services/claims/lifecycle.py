"""Claim lifecycle engine: create, confirm payment, redeem, cancel, transfer.

Every transition owns its transaction. Preconditions are re-asserted inside the
conditional UPDATE that applies the change so a stale read can never push a
claim through a transition its current row no longer allows.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator
from uuid import UUID

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.types import utcnow
from localdeals_api.models.claim import Claim, ClaimStateEnum, ClaimTransfer, ConfirmationSourceEnum
from localdeals_api.models.customer import Customer
from localdeals_api.models.deal import Deal, PaymentTierEnum
from localdeals_api.models.points import PointsEntryTypeEnum
from localdeals_api.observability.claims import get_claims_store
from localdeals_api.observability.tracing import get_tracer
from localdeals_api.services.claims.capacity import CapacityController
from localdeals_api.services.claims.tokens import (
    new_redemption_code,
    new_scan_token,
    new_session_token,
    normalize_redemption_code,
)
from localdeals_api.services.errors import (
    AlreadyRedeemedError,
    AtCapacityError,
    ClaimsDomainError,
    DealUnavailableError,
    DepositNotConfirmedError,
    DuplicateActiveClaimError,
    ExpiredError,
    InvalidProofError,
    NotFoundError,
    NotOwnerError,
    PaymentTierMismatchError,
    RecipientNotFoundError,
    SelfTransferError,
)
from localdeals_api.services.points.ledger import PointsLedgerService


class TokenGenerationError(RuntimeError):
    """Raised when no collision-free proof tokens could be produced."""


@dataclass(slots=True)
class ConfirmationResult:
    claim: Claim
    changed: bool


@dataclass(slots=True)
class RedemptionResult:
    claim: Claim
    deal: Deal
    remaining_balance: Decimal


@dataclass(slots=True)
class CancellationResult:
    claim: Claim
    slot_released: bool


@dataclass(slots=True)
class ProofResolution:
    claim: Claim
    deal: Deal
    status: str
    remaining_balance: Decimal


def active_claim_filter(now: datetime):
    """Claims that still hold or may still take a deal allowance."""

    return (
        Claim.cancelled_at.is_(None),
        Claim.redeemed.is_(False),
        Claim.expires_at > now,
    )


class ClaimLifecycleService:
    """State machine for a single claim's life from reservation to terminal state."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._session = db_session
        self._capacity = CapacityController(db_session)
        self._ledger = PointsLedgerService(db_session)
        self._store = get_claims_store()

    @asynccontextmanager
    async def _transition(self, name: str, **context: object) -> AsyncIterator[None]:
        log_context = {key: str(value) for key, value in context.items() if value is not None}
        with get_tracer().start_as_current_span(f"claims.{name}") as span:
            for key, value in log_context.items():
                span.set_attribute(f"claims.{key}", value)
            try:
                yield
            except ClaimsDomainError as error:
                await self._session.rollback()
                span.set_attribute("claims.outcome", error.code)
                self._store.record_transition(name, error.code)
                logger.info("Claim transition rejected", transition=name, code=error.code, **log_context)
                raise
            except Exception:
                await self._session.rollback()
                self._store.record_transition(name, "error")
                logger.exception("Claim transition failed", transition=name, **log_context)
                raise

    def _succeeded(self, name: str, outcome: str = "success", **context: object) -> None:
        self._store.record_transition(name, outcome)
        logger.info(
            "Claim transition applied" if outcome == "success" else "Claim transition skipped",
            transition=name,
            outcome=outcome,
            **{key: str(value) for key, value in context.items() if value is not None},
        )

    async def _load_claim(self, claim_id: UUID, *, include_cancelled: bool = False) -> Claim:
        stmt = select(Claim).where(Claim.id == claim_id).execution_options(populate_existing=True)
        claim = (await self._session.execute(stmt)).unique().scalar_one_or_none()
        if claim is None or (claim.cancelled_at is not None and not include_cancelled):
            raise NotFoundError(claim_id=str(claim_id))
        return claim

    async def _load_deal(self, deal_id: UUID) -> Deal:
        stmt = select(Deal).where(Deal.id == deal_id).execution_options(populate_existing=True)
        deal = (await self._session.execute(stmt)).scalar_one_or_none()
        if deal is None:
            raise NotFoundError("Deal not found.", deal_id=str(deal_id))
        return deal

    async def _lock_customers(self, *customer_ids: UUID) -> dict[UUID, Customer]:
        # Fixed lock order across requests touching the same pair of customers.
        ordered = sorted(set(customer_ids), key=str)
        stmt = (
            select(Customer)
            .where(Customer.id.in_(ordered))
            .order_by(Customer.id)
            .with_for_update()
        )
        rows = (await self._session.execute(stmt)).scalars().all()
        return {row.id: row for row in rows}

    async def _has_active_claim(self, deal_id: UUID, customer_id: UUID, now: datetime) -> bool:
        stmt = (
            select(func.count())
            .select_from(Claim)
            .where(Claim.deal_id == deal_id, Claim.customer_id == customer_id, *active_claim_filter(now))
        )
        return (await self._session.execute(stmt)).scalar_one() > 0

    async def _issue_proof_tokens(self) -> tuple[str, str]:
        attempts = settings.token_generation_max_attempts
        for attempt in range(1, attempts + 1):
            scan_token = new_scan_token()
            code = new_redemption_code(settings.redemption_code_length)
            stmt = (
                select(func.count())
                .select_from(Claim)
                .where(or_(Claim.scan_token == scan_token, Claim.redemption_code == code))
            )
            if (await self._session.execute(stmt)).scalar_one() == 0:
                return scan_token, code
            logger.warning("Redemption token collision", attempt=attempt)
        raise TokenGenerationError(f"Unable to generate unique redemption tokens after {attempts} attempts")

    async def create_claim(self, deal_id: UUID, customer_id: UUID, *, now: datetime | None = None) -> Claim:
        """Reserve a deal for a customer without consuming capacity.

        Deals without a deposit are confirmed immediately by the system, in the
        same transaction, and earn no points.
        """

        moment = now or utcnow()
        async with self._transition("create", deal_id=deal_id, customer_id=customer_id):
            locked = await self._lock_customers(customer_id)
            if customer_id not in locked:
                raise NotFoundError("Customer not found.", customer_id=str(customer_id))

            deal = await self._load_deal(deal_id)
            if moment >= deal.expires_at:
                raise ExpiredError("This deal has expired.", deal_id=str(deal_id))
            if not deal.is_claimable_at(moment):
                raise DealUnavailableError(deal_id=str(deal_id))
            if deal.max_claims is not None and deal.claims_count >= deal.max_claims:
                raise AtCapacityError(deal_id=str(deal_id))
            if await self._has_active_claim(deal_id, customer_id, moment):
                raise DuplicateActiveClaimError("You have already claimed this deal.", deal_id=str(deal_id))

            claim = Claim(
                deal_id=deal.id,
                customer_id=customer_id,
                payment_tier=deal.payment_tier,
                session_token=new_session_token(),
                expires_at=deal.expires_at,
                deposit_confirmed=False,
                redeemed=False,
            )
            self._session.add(claim)
            await self._session.flush()

            auto_confirmed = False
            if not deal.requires_deposit:
                auto_confirmed = await self._apply_confirmation(
                    claim, deal, source=ConfirmationSourceEnum.SYSTEM, now=moment, award_points=False
                )

            await self._session.commit()
            await self._session.refresh(claim)

        self._succeeded(
            "create",
            claim_id=claim.id,
            deal_id=deal_id,
            customer_id=customer_id,
            auto_confirmed=auto_confirmed,
        )
        return claim

    async def _apply_confirmation(
        self,
        claim: Claim,
        deal: Deal,
        *,
        source: ConfirmationSourceEnum,
        now: datetime,
        award_points: bool,
    ) -> bool:
        """Gate, reserve a slot, issue proof tokens and award points. Does not commit.

        Returns False when another confirmation already won the gate.
        """

        gate = (
            update(Claim)
            .where(
                Claim.id == claim.id,
                Claim.deposit_confirmed.is_(False),
                Claim.cancelled_at.is_(None),
                Claim.expires_at > now,
            )
            .values(deposit_confirmed=True, deposit_confirmed_at=now, confirmed_via=source, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(gate)
        await self._session.refresh(claim)
        if result.rowcount != 1:
            if claim.deposit_confirmed:
                return False
            if claim.cancelled_at is not None:
                raise NotFoundError(claim_id=str(claim.id))
            raise ExpiredError(claim_id=str(claim.id))

        decision = await self._capacity.try_reserve_slot(deal.id)
        if not decision.granted:
            raise AtCapacityError(deal_id=str(deal.id), claim_id=str(claim.id))

        claim.scan_token, claim.redemption_code = await self._issue_proof_tokens()
        await self._session.flush()

        if award_points and settings.points_per_confirmed_claim > 0:
            await self._ledger.append(
                claim.customer_id,
                settings.points_per_confirmed_claim,
                PointsEntryTypeEnum.EARNED,
                f"Claimed deal: {deal.title}",
                deal_id=deal.id,
                claim_id=claim.id,
                created_by=source.value,
            )
        return True

    async def confirm_payment(
        self,
        claim_id: UUID,
        *,
        source: ConfirmationSourceEnum,
        vendor_id: UUID | None = None,
        session_token: str | None = None,
        now: datetime | None = None,
    ) -> ConfirmationResult:
        """Idempotent deposit confirmation shared by webhooks and vendor action.

        A claim that is already confirmed yields ``changed=False`` and no side
        effects. Running out of capacity leaves the claim in ``created``.
        """

        moment = now or utcnow()
        async with self._transition("confirm_payment", claim_id=claim_id, source=source.value):
            claim = await self._load_claim(claim_id)
            if session_token is not None and session_token != claim.session_token:
                raise NotFoundError("Claim not found for payment session.", claim_id=str(claim_id))
            if source == ConfirmationSourceEnum.VENDOR:
                if vendor_id is None or claim.deal.vendor_id != vendor_id:
                    raise NotOwnerError(claim_id=str(claim_id))
                if claim.payment_tier != PaymentTierEnum.MANUAL:
                    raise PaymentTierMismatchError(claim_id=str(claim_id))

            changed = False
            if not claim.deposit_confirmed:
                if claim.is_expired_at(moment):
                    raise ExpiredError(claim_id=str(claim_id))
                changed = await self._apply_confirmation(
                    claim, claim.deal, source=source, now=moment, award_points=True
                )
                await self._session.commit()
                await self._session.refresh(claim)

        self._succeeded(
            "confirm_payment",
            "success" if changed else "noop",
            claim_id=claim_id,
            deal_id=claim.deal_id,
            source=source.value,
        )
        return ConfirmationResult(claim=claim, changed=changed)

    async def _find_by_proof(self, proof: str) -> Claim | None:
        raw = proof.strip()
        if not raw:
            return None
        stmt = (
            select(Claim)
            .where(or_(Claim.scan_token == raw, Claim.redemption_code == normalize_redemption_code(raw)))
            .execution_options(populate_existing=True)
        )
        return (await self._session.execute(stmt)).unique().scalar_one_or_none()

    async def resolve_proof(self, proof: str, *, now: datetime | None = None) -> ProofResolution:
        """Read-only status lookup behind the scan URL."""

        moment = now or utcnow()
        claim = await self._find_by_proof(proof)
        if claim is None:
            raise InvalidProofError()

        state = claim.state_at(moment)
        status = {
            ClaimStateEnum.CREATED: "pending",
            ClaimStateEnum.DEPOSIT_CONFIRMED: "valid",
        }.get(state, state.value)
        return ProofResolution(
            claim=claim,
            deal=claim.deal,
            status=status,
            remaining_balance=claim.deal.remaining_balance(),
        )

    async def redeem(
        self,
        proof: str,
        *,
        vendor_id: UUID,
        bypass_ownership: bool = False,
        now: datetime | None = None,
    ) -> RedemptionResult:
        """Exactly-once redemption of a confirmed claim by the deal's vendor."""

        moment = now or utcnow()
        async with self._transition("redeem", vendor_id=vendor_id):
            claim = await self._find_by_proof(proof)
            if claim is None or claim.cancelled_at is not None:
                raise InvalidProofError()
            if not bypass_ownership and claim.deal.vendor_id != vendor_id:
                raise NotOwnerError("This coupon belongs to a different business.", claim_id=str(claim.id))
            if claim.redeemed:
                raise AlreadyRedeemedError(claim_id=str(claim.id))
            if claim.is_expired_at(moment):
                raise ExpiredError(claim_id=str(claim.id))
            if not claim.deposit_confirmed:
                raise DepositNotConfirmedError(claim_id=str(claim.id))

            stmt = (
                update(Claim)
                .where(
                    Claim.id == claim.id,
                    Claim.redeemed.is_(False),
                    Claim.deposit_confirmed.is_(True),
                    Claim.cancelled_at.is_(None),
                    Claim.expires_at > moment,
                )
                .values(redeemed=True, redeemed_at=moment, redeemed_by_vendor_id=vendor_id, updated_at=moment)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            await self._session.refresh(claim)
            if result.rowcount != 1:
                if claim.redeemed:
                    raise AlreadyRedeemedError(claim_id=str(claim.id))
                if claim.cancelled_at is not None:
                    raise InvalidProofError()
                raise ExpiredError(claim_id=str(claim.id))
            await self._session.commit()

        self._succeeded("redeem", claim_id=claim.id, deal_id=claim.deal_id, vendor_id=vendor_id)
        return RedemptionResult(claim=claim, deal=claim.deal, remaining_balance=claim.deal.remaining_balance())

    async def cancel(self, claim_id: UUID, *, customer_id: UUID, now: datetime | None = None) -> CancellationResult:
        """Void the claim; a confirmed claim gives its slot back. Deposits are not refunded."""

        moment = now or utcnow()
        async with self._transition("cancel", claim_id=claim_id, customer_id=customer_id):
            claim = await self._load_claim(claim_id)
            if claim.customer_id != customer_id:
                raise NotOwnerError(claim_id=str(claim_id))
            if claim.redeemed:
                raise AlreadyRedeemedError("Cannot cancel a redeemed claim.", claim_id=str(claim_id))
            if claim.is_expired_at(moment):
                raise ExpiredError(claim_id=str(claim_id))

            stmt = (
                update(Claim)
                .where(
                    Claim.id == claim_id,
                    Claim.customer_id == customer_id,
                    Claim.cancelled_at.is_(None),
                    Claim.redeemed.is_(False),
                    Claim.expires_at > moment,
                )
                .values(cancelled_at=moment, updated_at=moment)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            await self._session.refresh(claim)
            if result.rowcount != 1:
                if claim.redeemed:
                    raise AlreadyRedeemedError("Cannot cancel a redeemed claim.", claim_id=str(claim_id))
                if claim.customer_id != customer_id:
                    raise NotOwnerError(claim_id=str(claim_id))
                if claim.cancelled_at is not None:
                    raise NotFoundError(claim_id=str(claim_id))
                raise ExpiredError(claim_id=str(claim_id))

            slot_released = False
            if claim.deposit_confirmed:
                slot_released = await self._capacity.release_slot(claim.deal_id)
            await self._session.commit()

        self._succeeded("cancel", claim_id=claim_id, deal_id=claim.deal_id, slot_released=slot_released)
        return CancellationResult(claim=claim, slot_released=slot_released)

    async def transfer(
        self,
        claim_id: UUID,
        *,
        from_customer_id: UUID,
        recipient_email: str,
        now: datetime | None = None,
    ) -> ClaimTransfer:
        """Move a confirmed claim to another existing customer and record the hop."""

        moment = now or utcnow()
        async with self._transition("transfer", claim_id=claim_id, customer_id=from_customer_id):
            claim = await self._load_claim(claim_id)
            if claim.customer_id != from_customer_id:
                raise NotOwnerError(claim_id=str(claim_id))
            if claim.redeemed:
                raise AlreadyRedeemedError("Cannot transfer a redeemed claim.", claim_id=str(claim_id))
            if claim.is_expired_at(moment):
                raise ExpiredError(claim_id=str(claim_id))
            if not claim.deposit_confirmed:
                raise DepositNotConfirmedError(
                    "Only claims with a confirmed deposit can be transferred.", claim_id=str(claim_id)
                )

            email = recipient_email.strip().lower()
            recipient = (
                await self._session.execute(select(Customer).where(func.lower(Customer.email) == email))
            ).scalar_one_or_none()
            if recipient is None:
                raise RecipientNotFoundError()
            if recipient.id == from_customer_id:
                raise SelfTransferError()

            await self._lock_customers(from_customer_id, recipient.id)
            if await self._has_active_claim(claim.deal_id, recipient.id, moment):
                raise DuplicateActiveClaimError(
                    "The recipient already has an active claim for this deal.", claim_id=str(claim_id)
                )

            stmt = (
                update(Claim)
                .where(
                    Claim.id == claim_id,
                    Claim.customer_id == from_customer_id,
                    Claim.cancelled_at.is_(None),
                    Claim.redeemed.is_(False),
                    Claim.deposit_confirmed.is_(True),
                    Claim.expires_at > moment,
                )
                .values(customer_id=recipient.id, updated_at=moment)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount != 1:
                await self._session.refresh(claim)
                if claim.cancelled_at is not None:
                    raise NotFoundError(claim_id=str(claim_id))
                if claim.redeemed:
                    raise AlreadyRedeemedError("Cannot transfer a redeemed claim.", claim_id=str(claim_id))
                if claim.is_expired_at(moment):
                    raise ExpiredError(claim_id=str(claim_id))
                raise NotOwnerError(claim_id=str(claim_id))

            record = ClaimTransfer(
                claim_id=claim_id,
                from_customer_id=from_customer_id,
                to_customer_id=recipient.id,
                created_at=moment,
            )
            self._session.add(record)
            await self._session.commit()
            await self._session.refresh(claim)

        self._succeeded(
            "transfer",
            claim_id=claim_id,
            deal_id=claim.deal_id,
            from_customer_id=from_customer_id,
            to_customer_id=recipient.id,
        )
        return record


__all__ = [
    "CancellationResult",
    "ClaimLifecycleService",
    "ConfirmationResult",
    "ProofResolution",
    "RedemptionResult",
    "TokenGenerationError",
    "active_claim_filter",
]
