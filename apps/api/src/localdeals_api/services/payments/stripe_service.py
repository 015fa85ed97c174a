"""Stripe integration for deposits on integrated-tier claims."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import stripe
from loguru import logger

from localdeals_api.core.settings import get_settings
from localdeals_api.models.claim import Claim
from localdeals_api.models.deal import Deal

DEPOSIT_METADATA_TYPE = "deal_deposit"


class StripeDepositService:
    """Opens Checkout sessions for deal deposits and verifies Stripe webhooks."""

    def __init__(self) -> None:
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.currency = settings.stripe_deposit_currency
        self.frontend_url = settings.frontend_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(stripe.api_key)

    async def create_deposit_session(
        self,
        claim: Claim,
        deal: Deal,
        *,
        customer_email: str | None = None,
    ) -> stripe.checkout.Session:
        """Create a Checkout session whose completion confirms ``claim``.

        Raises:
            stripe.StripeError: If session creation fails
        """

        metadata = {
            "type": DEPOSIT_METADATA_TYPE,
            "claim_id": str(claim.id),
            "deal_id": str(deal.id),
            "session_token": claim.session_token,
        }
        unit_amount = int((Decimal(deal.deposit_amount or 0) * 100).to_integral_value())
        session_data: dict[str, Any] = {
            "mode": "payment",
            "client_reference_id": claim.session_token,
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": unit_amount,
                        "product_data": {"name": f"Deposit: {deal.title}"},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{self.frontend_url}/claims/{claim.id}?deposit=success",
            "cancel_url": f"{self.frontend_url}/claims/{claim.id}?deposit=cancelled",
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_email:
            session_data["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(**session_data)
        except stripe.StripeError as e:
            logger.error("Failed to create deposit checkout session", claim_id=str(claim.id), error=str(e))
            raise

        logger.info(
            "Created deposit checkout session",
            session_id=session.id,
            claim_id=str(claim.id),
            deal_id=str(deal.id),
            amount=unit_amount,
        )
        return session

    def construct_webhook_event(self, payload: str, signature: str) -> stripe.Event:
        """Verify the Stripe signature header and parse the event.

        Raises:
            stripe.SignatureVerificationError: If the signature does not match
            ValueError: If the payload is not valid JSON
        """

        return stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self.webhook_secret)


__all__ = ["DEPOSIT_METADATA_TYPE", "StripeDepositService"]
