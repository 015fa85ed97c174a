import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from localdeals_api.db.types import utcnow
from localdeals_api.models.claim import Claim
from localdeals_api.models.deal import PaymentTierEnum
from localdeals_api.models.deposit_event import (
    DepositEvent,
    DepositEventStatusEnum,
    DepositProviderEnum,
    record_deposit_event,
)
from localdeals_api.services.claims.lifecycle import ClaimLifecycleService
from localdeals_api.services.errors import WebhookVerificationError
from localdeals_api.services.payments.deposit_reconciler import (
    DepositReconciler,
    MalformedDepositEventError,
    compute_signature,
    parse_generic_event,
    parse_stripe_event,
    retry_delay,
    verify_generic_signature,
)
from localdeals_api.workers.deposit_replay import DepositEventReplayWorker, ReplayLimitExceededError


def _generic_body(session_token: str, *, event_id: str = "evt_generic_1", claim_id=None) -> bytes:
    payload = {"id": event_id, "type": "deposit.confirmed", "client_reference_id": session_token}
    if claim_id is not None:
        payload["metadata"] = {"claim_id": str(claim_id)}
    return json.dumps(payload).encode("utf-8")


def _stripe_body(session_token: str, *, event_type: str = "checkout.session.completed", kind: str = "deal_deposit") -> bytes:
    return json.dumps(
        {
            "id": "evt_stripe_1",
            "type": event_type,
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "client_reference_id": session_token,
                    "payment_status": "paid",
                    "metadata": {"type": kind, "session_token": session_token},
                }
            },
        }
    ).encode("utf-8")


async def _integrated_claim(session_factory, make_deal, make_customer, *, max_claims=None) -> Claim:
    deal = await make_deal(payment_tier=PaymentTierEnum.INTEGRATED, max_claims=max_claims)
    customer = await make_customer()
    async with session_factory() as session:
        return await ClaimLifecycleService(session).create_claim(deal.id, customer.id)


async def _events(session_factory) -> list[DepositEvent]:
    async with session_factory() as session:
        return list((await session.execute(select(DepositEvent))).scalars().all())


def test_generic_signature_round_trip() -> None:
    body = b'{"id": "evt_1"}'
    verify_generic_signature(body, compute_signature(body, "s3cret"), "s3cret")

    with pytest.raises(WebhookVerificationError):
        verify_generic_signature(body, compute_signature(body, "other"), "s3cret")
    with pytest.raises(WebhookVerificationError):
        verify_generic_signature(body, None, "s3cret")
    with pytest.raises(WebhookVerificationError):
        verify_generic_signature(body, compute_signature(body, ""), "")


def test_parse_generic_event_requires_session_token() -> None:
    parsed = parse_generic_event(_generic_body("tok_abc"))
    assert parsed.provider == DepositProviderEnum.GENERIC
    assert parsed.external_id == "evt_generic_1"
    assert parsed.session_token == "tok_abc"

    with pytest.raises(MalformedDepositEventError):
        parse_generic_event(b'{"id": "evt_2"}')
    with pytest.raises(MalformedDepositEventError):
        parse_generic_event(b"not json")


def test_parse_stripe_event_filters_unrelated_events() -> None:
    parsed = parse_stripe_event(_stripe_body("tok_abc"))
    assert parsed is not None
    assert parsed.provider == DepositProviderEnum.STRIPE
    assert parsed.external_id == "evt_stripe_1"

    assert parse_stripe_event(_stripe_body("tok_abc", event_type="invoice.paid")) is None
    assert parse_stripe_event(_stripe_body("tok_abc", kind="subscription")) is None


def test_retry_delay_doubles() -> None:
    assert retry_delay(2) == retry_delay(1) * 2
    assert retry_delay(3) == retry_delay(1) * 4


@pytest.mark.asyncio
async def test_ingest_confirms_claim_once(session_factory, make_deal, make_customer) -> None:
    claim = await _integrated_claim(session_factory, make_deal, make_customer)
    body = _generic_body(claim.session_token, claim_id=claim.id)

    async with session_factory() as session:
        first = await DepositReconciler(session).ingest(parse_generic_event(body))
    async with session_factory() as session:
        replay = await DepositReconciler(session).ingest(parse_generic_event(body))
    async with session_factory() as session:
        second_delivery = await DepositReconciler(session).ingest(
            parse_generic_event(_generic_body(claim.session_token, event_id="evt_generic_2"))
        )

    assert first.status == "processed"
    assert first.claim_id == claim.id
    assert replay.status == "duplicate"
    assert replay.event_id == first.event_id
    assert second_delivery.status == "processed"

    async with session_factory() as session:
        stored = await session.get(Claim, claim.id)
        assert stored.deposit_confirmed is True
        assert stored.scan_token is not None
    assert len(await _events(session_factory)) == 2


@pytest.mark.asyncio
async def test_unknown_session_token_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        outcome = await DepositReconciler(session).ingest(parse_generic_event(_generic_body("tok_missing")))

    assert outcome.status == "rejected"
    assert outcome.detail == {"code": "not_found"}
    (event,) = await _events(session_factory)
    assert event.status == DepositEventStatusEnum.REJECTED
    assert event.attempts == 1


@pytest.mark.asyncio
async def test_capacity_rejection_is_final(session_factory, make_deal, make_customer) -> None:
    deal = await make_deal(payment_tier=PaymentTierEnum.INTEGRATED, max_claims=1)
    first_customer = await make_customer()
    second_customer = await make_customer()
    async with session_factory() as session:
        first = await ClaimLifecycleService(session).create_claim(deal.id, first_customer.id)
    async with session_factory() as session:
        second = await ClaimLifecycleService(session).create_claim(deal.id, second_customer.id)

    async with session_factory() as session:
        await DepositReconciler(session).ingest(
            parse_generic_event(_generic_body(first.session_token, event_id="evt_a"))
        )
    async with session_factory() as session:
        outcome = await DepositReconciler(session).ingest(
            parse_generic_event(_generic_body(second.session_token, event_id="evt_b"))
        )

    assert outcome.status == "rejected"
    assert outcome.detail == {"code": "at_capacity"}
    async with session_factory() as session:
        assert (await session.get(Claim, second.id)).deposit_confirmed is False


@pytest.mark.asyncio
async def test_infrastructure_failure_retries_then_dead_letters(
    session_factory, make_deal, make_customer, monkeypatch
) -> None:
    claim = await _integrated_claim(session_factory, make_deal, make_customer)

    async def _unavailable(self, *args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(ClaimLifecycleService, "confirm_payment", _unavailable)

    before = utcnow()
    async with session_factory() as session:
        outcome = await DepositReconciler(session, max_attempts=2).ingest(
            parse_generic_event(_generic_body(claim.session_token))
        )
    assert outcome.status == "pending_retry"

    (event,) = await _events(session_factory)
    event_id = event.id
    assert event.attempts == 1
    assert event.next_retry_at >= before + retry_delay(1)
    assert "database went away" in event.last_error

    worker = DepositEventReplayWorker(session_factory, max_attempts=2)
    assert await worker.run_once(now=before) == {
        "processed": 0,
        "rejected": 0,
        "pending_retry": 0,
        "dead_lettered": 0,
        "failed": 0,
    }

    summary = await worker.run_once(now=utcnow() + timedelta(hours=1))
    assert summary["dead_lettered"] == 1

    with pytest.raises(ReplayLimitExceededError):
        await worker.replay_event(event_id)

    monkeypatch.undo()
    replayed = await worker.replay_event(event_id, force=True)
    assert replayed.status == "processed"
    async with session_factory() as session:
        assert (await session.get(Claim, claim.id)).deposit_confirmed is True


@pytest.mark.asyncio
async def test_replay_worker_recovers_pending_event(session_factory, make_deal, make_customer, monkeypatch) -> None:
    claim = await _integrated_claim(session_factory, make_deal, make_customer)

    async def _unavailable(self, *args, **kwargs):
        raise RuntimeError("timeout")

    monkeypatch.setattr(ClaimLifecycleService, "confirm_payment", _unavailable)
    async with session_factory() as session:
        await DepositReconciler(session).ingest(parse_generic_event(_generic_body(claim.session_token)))
    monkeypatch.undo()

    summary = await DepositEventReplayWorker(session_factory).run_once(now=utcnow() + timedelta(hours=1))

    assert summary["processed"] == 1
    (event,) = await _events(session_factory)
    assert event.status == DepositEventStatusEnum.PROCESSED
    assert event.attempts == 2
    assert event.claim_id == claim.id


async def _store_unapplied(session_factory, body: bytes):
    parsed = parse_generic_event(body)
    async with session_factory() as session:
        record = await record_deposit_event(
            session,
            provider=parsed.provider,
            external_id=parsed.external_id,
            payload_hash=parsed.payload_hash,
            payload=parsed.payload,
            event_type=parsed.event_type,
            session_token=parsed.session_token,
        )
        await session.commit()
        return record.event.id


@pytest.mark.asyncio
async def test_redelivery_applies_event_that_was_stored_but_never_processed(
    session_factory, make_deal, make_customer
) -> None:
    claim = await _integrated_claim(session_factory, make_deal, make_customer)
    body = _generic_body(claim.session_token)
    event_id = await _store_unapplied(session_factory, body)

    async with session_factory() as session:
        outcome = await DepositReconciler(session).ingest(parse_generic_event(body))

    assert outcome.status == "processed"
    assert outcome.event_id == event_id
    async with session_factory() as session:
        assert (await session.get(Claim, claim.id)).deposit_confirmed is True
    (event,) = await _events(session_factory)
    assert event.status == DepositEventStatusEnum.PROCESSED
    assert event.attempts == 1

    async with session_factory() as session:
        again = await DepositReconciler(session).ingest(parse_generic_event(body))
    assert again.status == "duplicate"


@pytest.mark.asyncio
async def test_replay_worker_picks_up_stale_received_event(session_factory, make_deal, make_customer) -> None:
    claim = await _integrated_claim(session_factory, make_deal, make_customer)
    await _store_unapplied(session_factory, _generic_body(claim.session_token))
    worker = DepositEventReplayWorker(session_factory, received_grace_seconds=300)

    fresh = await worker.run_once(now=utcnow())
    assert fresh["processed"] == 0

    summary = await worker.run_once(now=utcnow() + timedelta(minutes=10))
    assert summary["processed"] == 1
    (event,) = await _events(session_factory)
    assert event.status == DepositEventStatusEnum.PROCESSED
    assert event.claim_id == claim.id
    async with session_factory() as session:
        assert (await session.get(Claim, claim.id)).deposit_confirmed is True


@pytest.mark.asyncio
async def test_replay_batch_continues_after_one_event_raises(
    session_factory, make_deal, make_customer, monkeypatch
) -> None:
    first = await _integrated_claim(session_factory, make_deal, make_customer)
    second = await _integrated_claim(session_factory, make_deal, make_customer)

    async def _unavailable(self, *args, **kwargs):
        raise RuntimeError("timeout")

    monkeypatch.setattr(ClaimLifecycleService, "confirm_payment", _unavailable)
    for claim, event_id in ((first, "evt_first"), (second, "evt_second")):
        async with session_factory() as session:
            await DepositReconciler(session).ingest(
                parse_generic_event(_generic_body(claim.session_token, event_id=event_id))
            )
    monkeypatch.undo()

    original_process = DepositReconciler.process
    calls = []

    async def _flaky_process(self, event_id, **kwargs):
        calls.append(event_id)
        if len(calls) == 1:
            raise RuntimeError("connection reset")
        return await original_process(self, event_id, **kwargs)

    monkeypatch.setattr(DepositReconciler, "process", _flaky_process)
    summary = await DepositEventReplayWorker(session_factory).run_once(now=utcnow() + timedelta(hours=1))

    assert len(calls) == 2
    assert summary["failed"] == 1
    assert summary["processed"] == 1
    statuses = sorted(event.status.value for event in await _events(session_factory))
    assert statuses == ["pending_retry", "processed"]
