import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import localdeals_api.models  # noqa: E402,F401
from localdeals_api.app import create_app  # noqa: E402
from localdeals_api.db.base import Base  # noqa: E402
from localdeals_api.db.session import get_session  # noqa: E402
from localdeals_api.db.types import utcnow  # noqa: E402
from localdeals_api.models.customer import Customer, CustomerRoleEnum  # noqa: E402
from localdeals_api.models.deal import Deal, DealStatusEnum, PaymentTierEnum  # noqa: E402
from localdeals_api.observability.claims import get_claims_store  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_claims_store():
    get_claims_store().reset()
    yield
    get_claims_store().reset()


@pytest.fixture
def make_customer(session_factory):
    async def _make(email: str | None = None, role: CustomerRoleEnum = CustomerRoleEnum.CUSTOMER) -> Customer:
        async with session_factory() as session:
            customer = Customer(id=uuid4(), email=email or f"{uuid4().hex[:10]}@example.com", role=role)
            session.add(customer)
            await session.commit()
            return customer

    return _make


@pytest.fixture
def make_deal(session_factory, make_customer):
    async def _make(
        *,
        vendor: Customer | None = None,
        max_claims: int | None = None,
        deposit_amount: Decimal | None = Decimal("5.00"),
        payment_tier: PaymentTierEnum = PaymentTierEnum.MANUAL,
        status: DealStatusEnum = DealStatusEnum.ACTIVE,
        expires_in: timedelta = timedelta(days=7),
        title: str = "Two-for-one tacos",
    ) -> Deal:
        owner = vendor or await make_customer(role=CustomerRoleEnum.VENDOR)
        async with session_factory() as session:
            deal = Deal(
                vendor_id=owner.id,
                title=title,
                original_price=Decimal("40.00"),
                deal_price=Decimal("20.00"),
                deposit_amount=deposit_amount,
                payment_tier=payment_tier,
                max_claims=max_claims,
                claims_count=0,
                starts_at=utcnow() - timedelta(days=1),
                expires_at=utcnow() + expires_in,
                status=status,
            )
            session.add(deal)
            await session.commit()
            return deal

    return _make


@pytest.fixture
def headers_for():
    def _headers(customer: Customer) -> dict[str, str]:
        return {
            "X-Session-User": str(customer.id),
            "X-Session-Email": customer.email,
            "X-Session-Role": customer.role.value,
        }

    return _headers
