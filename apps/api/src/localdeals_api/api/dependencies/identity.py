"""Session-aware dependencies resolving the forwarded identity once per request."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.session import get_session
from localdeals_api.models.customer import Customer, CustomerRoleEnum


@dataclass(slots=True, frozen=True)
class Identity:
    user_id: UUID
    email: str
    role: CustomerRoleEnum

    @property
    def is_admin(self) -> bool:
        return self.role == CustomerRoleEnum.ADMIN


async def _upsert_customer(db: AsyncSession, identity: Identity) -> None:
    customer = await db.get(Customer, identity.user_id)
    if customer is not None:
        if customer.email != identity.email or customer.role != identity.role:
            customer.email = identity.email
            customer.role = identity.role
            await db.commit()
        return

    db.add(Customer(id=identity.user_id, email=identity.email, role=identity.role))
    try:
        await db.commit()
    except IntegrityError as error:
        await db.rollback()
        # Concurrent first request for the same user already inserted it.
        if await db.get(Customer, identity.user_id) is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Session email is already bound to another user",
            ) from error


async def require_identity(
    session_user: str | None = Header(None, alias="X-Session-User"),
    session_email: str | None = Header(None, alias="X-Session-Email"),
    session_role: str | None = Header(None, alias="X-Session-Role"),
    db: AsyncSession = Depends(get_session),
) -> Identity:
    """Resolve the authenticated caller from forwarded session headers."""

    if not session_user or not session_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    try:
        user_id = UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

    raw_role = (session_role or CustomerRoleEnum.CUSTOMER.value).strip().lower()
    if raw_role not in settings.allowed_identity_roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unsupported session role")
    try:
        role = CustomerRoleEnum(raw_role)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unsupported session role") from error

    identity = Identity(user_id=user_id, email=session_email.strip().lower(), role=role)
    await _upsert_customer(db, identity)
    return identity


async def require_customer(identity: Identity = Depends(require_identity)) -> Identity:
    return identity


async def require_vendor(identity: Identity = Depends(require_identity)) -> Identity:
    if identity.role not in (CustomerRoleEnum.VENDOR, CustomerRoleEnum.ADMIN):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Vendor access required")
    return identity


async def require_admin(identity: Identity = Depends(require_identity)) -> Identity:
    if identity.role != CustomerRoleEnum.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity


__all__ = ["Identity", "require_admin", "require_customer", "require_identity", "require_vendor"]
