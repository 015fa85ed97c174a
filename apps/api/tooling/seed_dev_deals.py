"""Seed a development vendor, customers and a pair of deals into the API database."""

from __future__ import annotations

import asyncio
import os
from datetime import timedelta
from decimal import Decimal
from typing import TypedDict

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from localdeals_api.core.settings import settings
from localdeals_api.db.types import utcnow
from localdeals_api.models.customer import Customer, CustomerRoleEnum
from localdeals_api.models.deal import Deal, DealStatusEnum, PaymentTierEnum


class SeedCustomer(TypedDict):
    email: str
    role: CustomerRoleEnum


class SeedDeal(TypedDict):
    title: str
    original_price: Decimal
    deal_price: Decimal
    deposit_amount: Decimal | None
    payment_tier: PaymentTierEnum
    max_claims: int | None


DEV_CUSTOMERS: list[SeedCustomer] = [
    {"email": os.getenv("DEV_VENDOR_EMAIL", "vendor@localdeals.dev").lower(), "role": CustomerRoleEnum.VENDOR},
    {"email": os.getenv("DEV_CUSTOMER_EMAIL", "customer@localdeals.dev").lower(), "role": CustomerRoleEnum.CUSTOMER},
    {"email": os.getenv("DEV_ADMIN_EMAIL", "admin@localdeals.dev").lower(), "role": CustomerRoleEnum.ADMIN},
]

DEV_DEALS: list[SeedDeal] = [
    {
        "title": "Half-price brunch for two",
        "original_price": Decimal("48.00"),
        "deal_price": Decimal("24.00"),
        "deposit_amount": Decimal("5.00"),
        "payment_tier": PaymentTierEnum.MANUAL,
        "max_claims": 20,
    },
    {
        "title": "Free espresso with any pastry",
        "original_price": Decimal("4.50"),
        "deal_price": Decimal("0.00"),
        "deposit_amount": None,
        "payment_tier": PaymentTierEnum.MANUAL,
        "max_claims": None,
    },
]


async def seed_dev_data(session: AsyncSession, *, validity: timedelta = timedelta(days=30)) -> dict[str, int]:
    """Create missing dev customers and deals; existing rows (matched by email/title) are left alone."""

    created = {"customers": 0, "deals": 0}
    by_email: dict[str, Customer] = {}
    for seed in DEV_CUSTOMERS:
        customer = (
            await session.execute(select(Customer).where(Customer.email == seed["email"]))
        ).scalar_one_or_none()
        if customer is None:
            customer = Customer(email=seed["email"], role=seed["role"])
            session.add(customer)
            created["customers"] += 1
        by_email[seed["email"]] = customer
    await session.flush()

    vendor = by_email[DEV_CUSTOMERS[0]["email"]]
    now = utcnow()
    for seed in DEV_DEALS:
        existing = (
            await session.execute(select(Deal.id).where(Deal.vendor_id == vendor.id, Deal.title == seed["title"]))
        ).scalar_one_or_none()
        if existing is not None:
            continue
        session.add(
            Deal(
                vendor_id=vendor.id,
                status=DealStatusEnum.ACTIVE,
                claims_count=0,
                starts_at=now,
                expires_at=now + validity,
                **seed,
            )
        )
        created["deals"] += 1

    await session.commit()
    return created


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            created = await seed_dev_data(session)
        logger.info("Development deals ready", **created)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
