from datetime import timedelta

import pytest

from localdeals_api.core.settings import settings
from localdeals_api.db.types import utcnow
from localdeals_api.models.points import PointsEntryTypeEnum, PointsLedgerEntry
from localdeals_api.services.errors import InvalidLedgerAmountError
from localdeals_api.services.points.ledger import PointsLedgerService, points_to_credit


@pytest.mark.asyncio
async def test_append_rejects_zero_and_non_integer_amounts(session_factory, make_customer) -> None:
    customer = await make_customer()
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        for amount in (0, 1.5, True):
            with pytest.raises(InvalidLedgerAmountError):
                await ledger.append(customer.id, amount, PointsEntryTypeEnum.ADJUSTMENT, "bad")


@pytest.mark.asyncio
async def test_append_enforces_sign_per_entry_type(session_factory, make_customer) -> None:
    customer = await make_customer()
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        with pytest.raises(InvalidLedgerAmountError):
            await ledger.append(customer.id, -10, PointsEntryTypeEnum.EARNED, "negative earn")
        with pytest.raises(InvalidLedgerAmountError):
            await ledger.append(customer.id, 10, PointsEntryTypeEnum.SPEND_CREDIT, "positive spend")

        await ledger.append(customer.id, -25, PointsEntryTypeEnum.ADJUSTMENT, "correction")
        await ledger.append(customer.id, 25, PointsEntryTypeEnum.ADJUSTMENT, "goodwill")
        await session.commit()


@pytest.mark.asyncio
async def test_balance_is_sum_of_entries(session_factory, make_customer) -> None:
    customer = await make_customer()
    other = await make_customer()
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        assert await ledger.balance(customer.id) == 0

        await ledger.append(customer.id, 100, PointsEntryTypeEnum.EARNED, "Claimed deal")
        await ledger.append(customer.id, 250, PointsEntryTypeEnum.BONUS, "Welcome bonus")
        await ledger.append(customer.id, -50, PointsEntryTypeEnum.ADJUSTMENT, "Correction")
        await ledger.append(other.id, 999, PointsEntryTypeEnum.BONUS, "Someone else")
        await session.commit()

        assert await ledger.balance(customer.id) == 300
        assert await ledger.balance(other.id) == 999


@pytest.mark.asyncio
async def test_expired_grants_drop_out_of_balance(session_factory, make_customer, monkeypatch) -> None:
    customer = await make_customer()
    old = utcnow() - timedelta(days=40)
    async with session_factory() as session:
        session.add_all(
            [
                PointsLedgerEntry(
                    user_id=customer.id,
                    amount=300,
                    entry_type=PointsEntryTypeEnum.EARNED,
                    description="Old grant",
                    created_at=old,
                ),
                PointsLedgerEntry(
                    user_id=customer.id,
                    amount=-100,
                    entry_type=PointsEntryTypeEnum.SPEND_CREDIT,
                    description="Old spend",
                    created_at=old,
                ),
                PointsLedgerEntry(
                    user_id=customer.id,
                    amount=200,
                    entry_type=PointsEntryTypeEnum.BONUS,
                    description="Recent grant",
                ),
            ]
        )
        await session.commit()

        ledger = PointsLedgerService(session)
        assert await ledger.balance(customer.id) == 400

        monkeypatch.setattr(settings, "points_expiry_days", 30)
        assert await ledger.balance(customer.id) == 100


@pytest.mark.asyncio
async def test_issue_only_allows_operator_entry_types(session_factory, make_customer) -> None:
    customer = await make_customer()
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        with pytest.raises(InvalidLedgerAmountError):
            await ledger.issue(customer.id, 100, PointsEntryTypeEnum.EARNED, "nope", actor="ops")

        entry = await ledger.issue(customer.id, 700, PointsEntryTypeEnum.BONUS, "Launch promo", actor="ops")

    assert entry.created_by == "ops"
    async with session_factory() as session:
        assert await PointsLedgerService(session).balance(customer.id) == 700


@pytest.mark.asyncio
async def test_summary_reports_redeemable_points(session_factory, make_customer) -> None:
    customer = await make_customer()
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        await ledger.append(customer.id, 100, PointsEntryTypeEnum.EARNED, "Claimed deal")
        await session.commit()

        summary = await ledger.summary(customer.id)
        assert summary.balance == 100
        assert summary.meets_minimum is False
        assert summary.can_redeem is False
        assert summary.redeemable_points == 0

        await ledger.append(customer.id, 550, PointsEntryTypeEnum.BONUS, "Promo")
        await session.commit()

        summary = await ledger.summary(customer.id)

    assert summary.balance == 650
    assert summary.lifetime_earned == 650
    assert summary.redeemable_points == 600
    assert summary.max_credit == points_to_credit(600)
    assert summary.can_redeem is True
    assert [entry.amount for entry in summary.entries] == [550, 100]
