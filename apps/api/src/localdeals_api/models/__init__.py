"""SQLAlchemy models package."""

from .customer import Customer, CustomerRoleEnum  # noqa: F401
from .deal import Deal, DealStatusEnum, PaymentTierEnum  # noqa: F401
from .claim import Claim, ClaimStateEnum, ClaimTransfer, ConfirmationSourceEnum  # noqa: F401
from .points import PointsEntryTypeEnum, PointsLedgerEntry, PointsRedemption  # noqa: F401
from .deposit_event import (  # noqa: F401
    DepositEvent,
    DepositEventStatusEnum,
    DepositProviderEnum,
    RecordedDepositEvent,
    fetch_events_for_retry,
    record_deposit_event,
)
