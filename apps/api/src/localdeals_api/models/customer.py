"""Customer projection of identities supplied by the identity collaborator."""

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, Enum as SqlEnum, String, func
from sqlalchemy.dialects.postgresql import UUID

from localdeals_api.db.base import Base
from localdeals_api.db.types import UTCDateTime, enum_values, utcnow


class CustomerRoleEnum(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class Customer(Base):
    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String(320), nullable=False, unique=True, index=True)
    role = Column(
        SqlEnum(CustomerRoleEnum, name="customer_role_enum", values_callable=enum_values),
        nullable=False,
        default=CustomerRoleEnum.CUSTOMER,
    )
    created_at = Column(UTCDateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)
