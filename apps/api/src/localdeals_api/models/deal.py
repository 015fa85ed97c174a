"""Deal model; only the capacity and pricing fields the claims core reads."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from localdeals_api.db.base import Base
from localdeals_api.db.types import UTCDateTime, enum_values, utcnow


class DealStatusEnum(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    EXPIRED = "expired"


class PaymentTierEnum(str, Enum):
    """How the deposit is collected: through the platform or paid to the business directly."""

    INTEGRATED = "integrated"
    MANUAL = "manual"


class Deal(Base):
    __tablename__ = "deals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    vendor_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    original_price = Column(Numeric(12, 2), nullable=False)
    deal_price = Column(Numeric(12, 2), nullable=False)
    deposit_amount = Column(Numeric(12, 2), nullable=True)
    payment_tier = Column(
        SqlEnum(PaymentTierEnum, name="payment_tier_enum", values_callable=enum_values),
        nullable=False,
        default=PaymentTierEnum.INTEGRATED,
    )
    max_claims = Column(Integer, nullable=True)
    claims_count = Column(Integer, nullable=False, default=0, server_default="0")
    starts_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=False)
    status = Column(
        SqlEnum(DealStatusEnum, name="deal_status_enum", values_callable=enum_values),
        nullable=False,
        default=DealStatusEnum.DRAFT,
    )
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    claims = relationship("Claim", back_populates="deal", lazy="noload")

    __table_args__ = (
        CheckConstraint("claims_count >= 0", name="ck_deals_claims_count_non_negative"),
        CheckConstraint(
            "max_claims IS NULL OR claims_count <= max_claims",
            name="ck_deals_claims_count_within_capacity",
        ),
    )

    @property
    def requires_deposit(self) -> bool:
        return self.deposit_amount is not None and Decimal(self.deposit_amount) > 0

    def remaining_balance(self) -> Decimal:
        """Amount still owed in store once the deposit is accounted for."""

        deposit = Decimal(self.deposit_amount or 0)
        return max(Decimal("0.00"), Decimal(self.deal_price) - deposit).quantize(Decimal("0.01"))

    def is_claimable_at(self, moment: datetime) -> bool:
        if self.status != DealStatusEnum.ACTIVE:
            return False
        if self.starts_at is not None and moment < self.starts_at:
            return False
        return moment < self.expires_at
