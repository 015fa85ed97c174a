import pytest

from localdeals_api.models.deal import Deal
from localdeals_api.services.claims.capacity import CapacityController


async def _claims_count(session_factory, deal_id) -> int:
    async with session_factory() as session:
        deal = await session.get(Deal, deal_id)
        return deal.claims_count


@pytest.mark.asyncio
async def test_reserve_grants_until_capacity_then_denies(session_factory, make_deal) -> None:
    deal = await make_deal(max_claims=2)

    async with session_factory() as session:
        controller = CapacityController(session)
        first = await controller.try_reserve_slot(deal.id)
        second = await controller.try_reserve_slot(deal.id)
        third = await controller.try_reserve_slot(deal.id)
        await session.commit()

    assert first.granted and second.granted
    assert not third.granted
    assert await _claims_count(session_factory, deal.id) == 2


@pytest.mark.asyncio
async def test_unlimited_deal_always_grants(session_factory, make_deal) -> None:
    deal = await make_deal(max_claims=None)

    async with session_factory() as session:
        controller = CapacityController(session)
        decisions = [await controller.try_reserve_slot(deal.id) for _ in range(25)]
        await session.commit()

    assert all(decision.granted for decision in decisions)
    assert await _claims_count(session_factory, deal.id) == 25


@pytest.mark.asyncio
async def test_release_never_drops_below_zero(session_factory, make_deal) -> None:
    deal = await make_deal(max_claims=1)

    async with session_factory() as session:
        controller = CapacityController(session)
        await controller.try_reserve_slot(deal.id)
        assert await controller.release_slot(deal.id) is True
        assert await controller.release_slot(deal.id) is False
        await session.commit()

    assert await _claims_count(session_factory, deal.id) == 0


@pytest.mark.asyncio
async def test_released_slot_can_be_reserved_again(session_factory, make_deal) -> None:
    deal = await make_deal(max_claims=1)

    async with session_factory() as session:
        controller = CapacityController(session)
        assert (await controller.try_reserve_slot(deal.id)).granted
        assert not (await controller.try_reserve_slot(deal.id)).granted
        await controller.release_slot(deal.id)
        assert (await controller.try_reserve_slot(deal.id)).granted
        await session.commit()

    assert await _claims_count(session_factory, deal.id) == 1
