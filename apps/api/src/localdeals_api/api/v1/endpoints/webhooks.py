"""Inbound payment confirmation webhooks."""

from __future__ import annotations

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.session import get_session
from localdeals_api.models.deposit_event import DepositProviderEnum
from localdeals_api.observability.claims import get_claims_store
from localdeals_api.services.errors import WebhookVerificationError
from localdeals_api.services.payments.deposit_reconciler import (
    DepositReconciler,
    ReconcileOutcome,
    parse_generic_event,
    parse_stripe_event,
    verify_generic_signature,
)
from localdeals_api.services.payments.stripe_service import StripeDepositService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _rejected_signature(provider: DepositProviderEnum, reason: str) -> None:
    get_claims_store().record_webhook(provider.value, "signature_failed")
    logger.warning("Deposit webhook verification failed", provider=provider.value, reason=reason)


def _acknowledge(outcome: ReconcileOutcome, response: Response) -> dict[str, str]:
    if outcome.status == "pending_retry":
        response.status_code = status.HTTP_202_ACCEPTED
    body = {"status": outcome.status}
    if outcome.event_id is not None:
        body["eventId"] = str(outcome.event_id)
    if outcome.detail.get("code"):
        body["code"] = str(outcome.detail["code"])
    return body


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
) -> dict[str, str]:
    """Handle Stripe Checkout completions for deal deposits."""

    stripe_service = StripeDepositService()
    if not stripe_service.webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook secret not configured")

    payload_bytes = await request.body()
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        _rejected_signature(DepositProviderEnum.STRIPE, "missing_header")
        raise WebhookVerificationError("Missing Stripe signature header.")

    try:
        stripe_service.construct_webhook_event(payload_bytes.decode("utf-8"), signature)
    except stripe.SignatureVerificationError as exc:
        _rejected_signature(DepositProviderEnum.STRIPE, "invalid_signature")
        raise WebhookVerificationError("Invalid Stripe signature.") from exc
    except (ValueError, UnicodeDecodeError) as exc:
        _rejected_signature(DepositProviderEnum.STRIPE, "invalid_payload")
        raise WebhookVerificationError("Invalid payload body.") from exc

    deposit = parse_stripe_event(payload_bytes)
    if deposit is None:
        get_claims_store().record_webhook(DepositProviderEnum.STRIPE.value, "ignored")
        return {"status": "ignored"}

    outcome = await DepositReconciler(db).ingest(deposit)
    return _acknowledge(outcome, response)


@router.post("/deposit-confirmed")
async def deposit_confirmed_webhook(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_session),
) -> dict[str, str]:
    """Handle HMAC-signed deposit confirmations from external processors."""

    payload_bytes = await request.body()
    try:
        verify_generic_signature(
            payload_bytes,
            request.headers.get("X-Deposit-Signature"),
            settings.deposit_webhook_secret,
        )
    except WebhookVerificationError as error:
        _rejected_signature(DepositProviderEnum.GENERIC, error.message)
        raise

    deposit = parse_generic_event(payload_bytes)
    outcome = await DepositReconciler(db).ingest(deposit)
    return _acknowledge(outcome, response)
