"""Points ledger and credit redemption models."""

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
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from localdeals_api.db.base import Base
from localdeals_api.db.types import UTCDateTime, enum_values, utcnow


class PointsEntryTypeEnum(str, Enum):
    EARNED = "earned"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    REDEEMED = "redeemed"
    SPEND_CREDIT = "spend_credit"


class PointsRedemption(Base):
    """Points converted to account credit; written together with its ledger debit."""

    __tablename__ = "points_redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    points_used = Column(Integer, nullable=False)
    credit_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (CheckConstraint("points_used > 0", name="ck_points_redemptions_points_positive"),)


class PointsLedgerEntry(Base):
    """Append-only signed point event. Corrections are new entries, never edits."""

    __tablename__ = "points_ledger"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    entry_type = Column(
        SqlEnum(PointsEntryTypeEnum, name="points_entry_type_enum", values_callable=enum_values),
        nullable=False,
    )
    description = Column(Text, nullable=False)
    deal_id = Column(UUID(as_uuid=True), ForeignKey("deals.id", ondelete="SET NULL"), nullable=True)
    claim_id = Column(UUID(as_uuid=True), ForeignKey("claims.id", ondelete="SET NULL"), nullable=True)
    redemption_id = Column(
        UUID(as_uuid=True),
        ForeignKey("points_redemptions.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False, index=True)

    __table_args__ = (CheckConstraint("amount <> 0", name="ck_points_ledger_amount_non_zero"),)
