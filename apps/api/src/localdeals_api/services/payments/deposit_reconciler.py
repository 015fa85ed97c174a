"""Consume payment confirmation events and drive the confirm-payment transition.

Events are stored before they are applied. Each event is processed in
isolation: domain rejections are final, infrastructure failures are scheduled
for retry with exponential backoff and dead-lettered once attempts run out.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.types import utcnow
from localdeals_api.models.claim import Claim, ConfirmationSourceEnum
from localdeals_api.models.deposit_event import (
    DepositEvent,
    DepositEventStatusEnum,
    DepositProviderEnum,
    record_deposit_event,
)
from localdeals_api.observability.claims import get_claims_store
from localdeals_api.services.claims.lifecycle import ClaimLifecycleService
from localdeals_api.services.errors import ClaimsDomainError, NotFoundError, WebhookVerificationError
from localdeals_api.services.payments.stripe_service import DEPOSIT_METADATA_TYPE

SIGNATURE_PREFIX = "sha256="


class MalformedDepositEventError(WebhookVerificationError):
    code = "malformed_event"
    message = "Malformed deposit event."


@dataclass(slots=True)
class DepositEventPayload:
    provider: DepositProviderEnum
    external_id: str
    event_type: str
    session_token: str
    payload: dict[str, Any]
    payload_hash: str
    claim_id: UUID | None = None


@dataclass(slots=True)
class ReconcileOutcome:
    status: str
    event_id: UUID | None = None
    claim_id: UUID | None = None
    detail: dict[str, Any] = field(default_factory=dict)


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_generic_signature(body: bytes, header: str | None, secret: str) -> None:
    """Check ``X-Deposit-Signature: sha256=<hex>`` against the shared secret."""

    if not secret:
        raise WebhookVerificationError("Deposit webhook secret is not configured.")
    if not header:
        raise WebhookVerificationError("Missing signature header.")
    if not hmac.compare_digest(compute_signature(body, secret), header.strip()):
        raise WebhookVerificationError()


def _parse_claim_id(raw: Any) -> UUID | None:
    if raw in (None, ""):
        return None
    try:
        return UUID(str(raw))
    except ValueError as error:
        raise MalformedDepositEventError("Invalid claim identifier.") from error


def parse_generic_event(body: bytes) -> DepositEventPayload:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise MalformedDepositEventError("Invalid payload body.") from error
    if not isinstance(payload, dict):
        raise MalformedDepositEventError("Invalid payload body.")

    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    session_token = payload.get("client_reference_id") or metadata.get("session_token") or payload.get("session_token")
    if not session_token:
        raise MalformedDepositEventError("Missing session token.")

    payload_hash = hashlib.sha256(body).hexdigest()
    external_id = str(payload.get("id") or payload.get("event_id") or payload_hash)
    return DepositEventPayload(
        provider=DepositProviderEnum.GENERIC,
        external_id=external_id,
        event_type=str(payload.get("type") or "deposit.confirmed"),
        session_token=str(session_token),
        payload=payload,
        payload_hash=payload_hash,
        claim_id=_parse_claim_id(metadata.get("claim_id") or payload.get("claim_id")),
    )


def parse_stripe_event(body: bytes) -> DepositEventPayload | None:
    """Extract a deposit confirmation from a signature-verified Stripe payload, or None if unrelated."""

    try:
        event = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise MalformedDepositEventError("Invalid payload body.") from error
    if not isinstance(event, dict) or not event.get("id"):
        raise MalformedDepositEventError("Invalid payload body.")
    if event.get("type") != "checkout.session.completed":
        return None
    data_object: dict[str, Any] = (event.get("data") or {}).get("object") or {}
    metadata: dict[str, Any] = data_object.get("metadata") or {}
    if metadata.get("type") != DEPOSIT_METADATA_TYPE:
        return None
    if data_object.get("payment_status") not in (None, "paid", "no_payment_required"):
        return None

    session_token = data_object.get("client_reference_id") or metadata.get("session_token")
    if not session_token:
        raise MalformedDepositEventError("Missing session token.")

    return DepositEventPayload(
        provider=DepositProviderEnum.STRIPE,
        external_id=str(event["id"]),
        event_type=str(event["type"]),
        session_token=str(session_token),
        payload=event,
        payload_hash=hashlib.sha256(body).hexdigest(),
        claim_id=_parse_claim_id(metadata.get("claim_id")),
    )


def retry_delay(attempts: int) -> timedelta:
    """Backoff after ``attempts`` failed tries: base, 2*base, 4*base, ..."""

    exponent = max(attempts - 1, 0)
    return timedelta(seconds=settings.deposit_event_retry_base_seconds * (2**exponent))


class DepositReconciler:
    """Idempotently apply recorded deposit events to their claims."""

    def __init__(self, db_session: AsyncSession, *, max_attempts: int | None = None) -> None:
        self._session = db_session
        self._max_attempts = max_attempts or settings.deposit_event_max_attempts
        self._store = get_claims_store()

    async def ingest(self, payload: DepositEventPayload) -> ReconcileOutcome:
        """Record the event once, then apply it."""

        record = await record_deposit_event(
            self._session,
            provider=payload.provider,
            external_id=payload.external_id,
            payload_hash=payload.payload_hash,
            payload=payload.payload,
            event_type=payload.event_type,
            session_token=payload.session_token,
            claim_id=payload.claim_id,
        )
        if not record.created:
            event_id, claim_id, status = record.event.id, record.event.claim_id, record.event.status
            await self._session.rollback()
            if status in (DepositEventStatusEnum.RECEIVED, DepositEventStatusEnum.PENDING_RETRY):
                # Stored but never applied; the redelivery drives it to completion.
                logger.info(
                    "Redelivered deposit event resumed",
                    provider=payload.provider.value,
                    external_id=payload.external_id,
                    status=status.value,
                )
                return await self.process(event_id)
            self._store.record_webhook(payload.provider.value, "duplicate")
            logger.info(
                "Duplicate deposit event ignored",
                provider=payload.provider.value,
                external_id=payload.external_id,
            )
            return ReconcileOutcome(status="duplicate", event_id=event_id, claim_id=claim_id)

        await self._session.commit()
        return await self.process(record.event.id)

    async def process(self, event_id: UUID, *, now: datetime | None = None) -> ReconcileOutcome:
        """Apply one stored event and persist its outcome."""

        event = await self._session.get(DepositEvent, event_id)
        if event is None:
            raise ValueError(f"Deposit event {event_id} not found")
        if event.status in (DepositEventStatusEnum.PROCESSED, DepositEventStatusEnum.REJECTED):
            return ReconcileOutcome(status=event.status.value, event_id=event.id, claim_id=event.claim_id)

        provider = event.provider.value
        session_token = event.session_token
        hinted_claim_id = event.claim_id
        error_code: str | None = None
        failure: str | None = None
        claim_id: UUID | None = None

        try:
            claim_id = await self._resolve_claim(session_token, hinted_claim_id)
            await ClaimLifecycleService(self._session).confirm_payment(
                claim_id,
                source=ConfirmationSourceEnum.WEBHOOK,
                session_token=session_token,
            )
        except ClaimsDomainError as error:
            await self._session.rollback()
            error_code = error.code
        except Exception as exc:
            await self._session.rollback()
            failure = f"{type(exc).__name__}: {exc}"
            logger.exception("Deposit event processing failed", event_id=str(event_id), provider=provider)

        moment = now or utcnow()
        event = await self._session.get(DepositEvent, event_id, populate_existing=True)
        event.attempts += 1
        if claim_id is not None:
            event.claim_id = claim_id

        if failure is None and error_code is None:
            event.status = DepositEventStatusEnum.PROCESSED
            event.processed_at = moment
            event.next_retry_at = None
            event.last_error = None
            outcome = "processed"
        elif failure is None:
            event.status = DepositEventStatusEnum.REJECTED
            event.processed_at = moment
            event.next_retry_at = None
            event.last_error = error_code
            outcome = "rejected"
        elif event.attempts >= self._max_attempts:
            event.status = DepositEventStatusEnum.DEAD_LETTERED
            event.next_retry_at = None
            event.last_error = failure
            outcome = "dead_lettered"
        else:
            event.status = DepositEventStatusEnum.PENDING_RETRY
            event.next_retry_at = moment + retry_delay(event.attempts)
            event.last_error = failure
            outcome = "pending_retry"
        await self._session.commit()

        self._store.record_webhook(provider, outcome)
        log = logger.warning if outcome in ("rejected", "dead_lettered") else logger.info
        log(
            "Deposit event reconciled",
            event_id=str(event_id),
            provider=provider,
            outcome=outcome,
            attempts=event.attempts,
            claim_id=str(claim_id) if claim_id else None,
            code=error_code,
        )
        return ReconcileOutcome(
            status=outcome,
            event_id=event.id,
            claim_id=claim_id,
            detail={"code": error_code} if error_code else {},
        )

    async def _resolve_claim(self, session_token: str | None, hinted_claim_id: UUID | None) -> UUID:
        if not session_token:
            raise NotFoundError("Claim not found for payment session.")
        stmt = select(Claim.id).where(Claim.session_token == session_token)
        claim_id = (await self._session.execute(stmt)).scalar_one_or_none()
        if claim_id is None:
            raise NotFoundError("Claim not found for payment session.")
        if hinted_claim_id is not None and hinted_claim_id != claim_id:
            raise NotFoundError("Payment session does not match claim.", claim_id=str(hinted_claim_id))
        return claim_id


__all__ = [
    "DepositEventPayload",
    "DepositReconciler",
    "MalformedDepositEventError",
    "ReconcileOutcome",
    "compute_signature",
    "parse_generic_event",
    "parse_stripe_event",
    "retry_delay",
    "verify_generic_signature",
]
