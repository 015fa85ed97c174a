"""Typed domain errors raised by the claim lifecycle and points ledger."""

from __future__ import annotations


class ClaimsDomainError(RuntimeError):
    """Base exception for precondition violations.

    Each subclass carries a stable machine ``code``, a user-facing ``message``
    and the HTTP status the API layer reports it with.
    """

    code: str = "domain_error"
    message: str = "The request could not be completed."
    status_code: int = 400

    def __init__(self, message: str | None = None, **context: object) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        self.context = context


class NotFoundError(ClaimsDomainError):
    code = "not_found"
    message = "Claim not found."
    status_code = 404


class AlreadyRedeemedError(ClaimsDomainError):
    code = "already_redeemed"
    message = "This coupon has already been redeemed."
    status_code = 409


class ExpiredError(ClaimsDomainError):
    code = "expired"
    message = "This coupon has already expired."
    status_code = 410


class AtCapacityError(ClaimsDomainError):
    code = "at_capacity"
    message = "This deal has reached its maximum number of claims."
    status_code = 409


class NotOwnerError(ClaimsDomainError):
    code = "not_owner"
    message = "You do not have permission to act on this claim."
    status_code = 403


class SelfTransferError(ClaimsDomainError):
    code = "self_transfer"
    message = "You cannot transfer a claim to yourself."
    status_code = 400


class RecipientNotFoundError(ClaimsDomainError):
    code = "recipient_not_found"
    message = "No customer account exists for that email address."
    status_code = 404


class DuplicateActiveClaimError(ClaimsDomainError):
    code = "duplicate_active_claim"
    message = "An active claim for this deal already exists."
    status_code = 409


class DealUnavailableError(ClaimsDomainError):
    code = "deal_unavailable"
    message = "This deal is not currently available."
    status_code = 409


class DepositNotConfirmedError(ClaimsDomainError):
    code = "deposit_not_confirmed"
    message = "The deposit for this claim has not been confirmed yet."
    status_code = 409


class DepositAlreadyConfirmedError(ClaimsDomainError):
    code = "deposit_already_confirmed"
    message = "The deposit for this claim is already confirmed."
    status_code = 409


class InvalidProofError(ClaimsDomainError):
    code = "invalid_proof"
    message = "Invalid coupon code."
    status_code = 404


class PaymentTierMismatchError(ClaimsDomainError):
    code = "payment_tier_mismatch"
    message = "This claim is paid through the platform and cannot be confirmed manually."
    status_code = 409


class InsufficientBalanceError(ClaimsDomainError):
    code = "insufficient_balance"
    message = "Insufficient balance."
    status_code = 400


class BelowMinimumRedemptionError(ClaimsDomainError):
    code = "below_minimum_redemption"
    message = "The requested amount is below the minimum redemption."
    status_code = 400


class NotAMultipleOfUnitError(ClaimsDomainError):
    code = "not_a_multiple_of_unit"
    message = "Points must be redeemed in whole units."
    status_code = 400


class InvalidLedgerAmountError(ClaimsDomainError):
    code = "invalid_ledger_amount"
    message = "Ledger entries must carry a non-zero amount."
    status_code = 400


class WebhookVerificationError(ClaimsDomainError):
    code = "webhook_verification_failed"
    message = "Invalid webhook signature."
    status_code = 400


__all__ = [
    "AlreadyRedeemedError",
    "AtCapacityError",
    "BelowMinimumRedemptionError",
    "ClaimsDomainError",
    "DealUnavailableError",
    "DepositAlreadyConfirmedError",
    "DepositNotConfirmedError",
    "DuplicateActiveClaimError",
    "ExpiredError",
    "InsufficientBalanceError",
    "InvalidLedgerAmountError",
    "InvalidProofError",
    "NotAMultipleOfUnitError",
    "NotFoundError",
    "NotOwnerError",
    "PaymentTierMismatchError",
    "RecipientNotFoundError",
    "SelfTransferError",
    "WebhookVerificationError",
]
