"""Deposit event ledger models and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Column,
    Enum as SqlEnum,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    func,
    or_,
    select,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.db.base import Base
from localdeals_api.db.types import UTCDateTime, enum_values, utcnow


class DepositProviderEnum(str, Enum):
    STRIPE = "stripe"
    GENERIC = "generic"


class DepositEventStatusEnum(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    REJECTED = "rejected"
    PENDING_RETRY = "pending_retry"
    DEAD_LETTERED = "dead_lettered"


class DepositEvent(Base):
    """Durable record for every inbound payment confirmation event."""

    __tablename__ = "deposit_events"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider = Column(
        SqlEnum(DepositProviderEnum, name="deposit_provider_enum", values_callable=enum_values),
        nullable=False,
    )
    external_id = Column(String(255), nullable=False)
    event_type = Column(String(128), nullable=True)
    payload_hash = Column(String(128), nullable=False)
    payload_json = Column("payload", JSON, nullable=True)
    session_token = Column(String(64), nullable=True, index=True)
    claim_id = Column(PG_UUID(as_uuid=True), nullable=True)
    status = Column(
        SqlEnum(DepositEventStatusEnum, name="deposit_event_status_enum", values_callable=enum_values),
        nullable=False,
        default=DepositEventStatusEnum.RECEIVED,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    next_retry_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    received_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_deposit_event_provider_external"),
    )


@dataclass(slots=True)
class RecordedDepositEvent:
    """Result container for deposit event logging."""

    event: DepositEvent
    created: bool


async def record_deposit_event(
    session: AsyncSession,
    *,
    provider: DepositProviderEnum,
    external_id: str,
    payload_hash: str,
    payload: dict[str, Any] | None,
    event_type: str | None = None,
    session_token: str | None = None,
    claim_id: UUID | None = None,
) -> RecordedDepositEvent:
    """Persist the deposit event unless the provider already delivered it."""

    stmt = select(DepositEvent).where(
        DepositEvent.provider == provider,
        DepositEvent.external_id == external_id,
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing:
        return RecordedDepositEvent(event=existing, created=False)

    event = DepositEvent(
        provider=provider,
        external_id=external_id,
        event_type=event_type,
        payload_hash=payload_hash,
        payload_json=payload,
        session_token=session_token,
        claim_id=claim_id,
    )
    session.add(event)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        found = (await session.execute(stmt)).scalar_one_or_none()
        if found is None:
            raise
        return RecordedDepositEvent(event=found, created=False)

    return RecordedDepositEvent(event=event, created=True)


async def fetch_events_for_retry(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int = 25,
    received_before: datetime | None = None,
) -> list[DepositEvent]:
    """Return events whose retry window has opened, oldest first.

    When ``received_before`` is given, events still in ``received`` that were
    stored before that moment are included as well; they were recorded but
    never applied.
    """

    due = and_(
        DepositEvent.status == DepositEventStatusEnum.PENDING_RETRY,
        DepositEvent.next_retry_at <= now,
    )
    if received_before is not None:
        due = or_(
            due,
            and_(
                DepositEvent.status == DepositEventStatusEnum.RECEIVED,
                DepositEvent.received_at <= received_before,
            ),
        )
    stmt = (
        select(DepositEvent)
        .where(due)
        .order_by(func.coalesce(DepositEvent.next_retry_at, DepositEvent.received_at).asc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
