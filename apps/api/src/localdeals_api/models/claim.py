"""Claim and chain-of-custody models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, Enum as SqlEnum, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from localdeals_api.db.base import Base
from localdeals_api.db.types import UTCDateTime, enum_values, utcnow
from localdeals_api.models.deal import PaymentTierEnum


class ClaimStateEnum(str, Enum):
    CREATED = "created"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ConfirmationSourceEnum(str, Enum):
    WEBHOOK = "webhook"
    VENDOR = "vendor"
    SYSTEM = "system"


class Claim(Base):
    """A customer's reservation against a deal.

    State is derived from the stored flags and the clock; see ``state_at``.
    """

    __tablename__ = "claims"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    deal_id = Column(UUID(as_uuid=True), ForeignKey("deals.id", ondelete="RESTRICT"), nullable=False, index=True)
    customer_id = Column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    payment_tier = Column(
        SqlEnum(PaymentTierEnum, name="payment_tier_enum", values_callable=enum_values),
        nullable=False,
    )
    session_token = Column(String(64), nullable=False, unique=True)
    deposit_confirmed = Column(Boolean, nullable=False, default=False, server_default="false")
    deposit_confirmed_at = Column(UTCDateTime, nullable=True)
    confirmed_via = Column(
        SqlEnum(ConfirmationSourceEnum, name="confirmation_source_enum", values_callable=enum_values),
        nullable=True,
    )
    scan_token = Column(String(64), nullable=True, unique=True)
    redemption_code = Column(String(16), nullable=True, unique=True)
    redeemed = Column(Boolean, nullable=False, default=False, server_default="false")
    redeemed_at = Column(UTCDateTime, nullable=True)
    redeemed_by_vendor_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(UTCDateTime, nullable=False)
    cancelled_at = Column(UTCDateTime, nullable=True)
    checkout_session_id = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    deal = relationship("Deal", back_populates="claims", lazy="joined")
    transfers = relationship(
        "ClaimTransfer",
        back_populates="claim",
        order_by="ClaimTransfer.created_at",
        lazy="noload",
    )

    def is_expired_at(self, moment: datetime) -> bool:
        return self.expires_at <= moment

    def state_at(self, moment: datetime) -> ClaimStateEnum:
        if self.cancelled_at is not None:
            return ClaimStateEnum.CANCELLED
        if self.redeemed:
            return ClaimStateEnum.REDEEMED
        if self.is_expired_at(moment):
            return ClaimStateEnum.EXPIRED
        if self.deposit_confirmed:
            return ClaimStateEnum.DEPOSIT_CONFIRMED
        return ClaimStateEnum.CREATED


class ClaimTransfer(Base):
    """Immutable chain-of-custody record; rows are only ever inserted."""

    __tablename__ = "claim_transfers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    claim_id = Column(UUID(as_uuid=True), ForeignKey("claims.id", ondelete="RESTRICT"), nullable=False, index=True)
    from_customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    to_customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    claim = relationship("Claim", back_populates="transfers")
