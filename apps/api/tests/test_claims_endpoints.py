from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID

import pytest
import stripe
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from localdeals_api.core.settings import settings
from localdeals_api.models.claim import Claim
from localdeals_api.models.customer import CustomerRoleEnum
from localdeals_api.models.deal import PaymentTierEnum
from localdeals_api.services.claims.lifecycle import ClaimLifecycleService
from localdeals_api.services.payments.stripe_service import StripeDepositService


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_manual_tier_claim_flow(app_with_db, make_customer, make_deal, headers_for):
    app, _ = app_with_db
    vendor = await make_customer(role=CustomerRoleEnum.VENDOR)
    customer = await make_customer()
    deal = await make_deal(vendor=vendor, max_claims=10)

    async with _client(app) as client:
        created = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(customer))
        assert created.status_code == 201
        body = created.json()
        claim_id = body["claim"]["id"]
        assert body["claim"]["status"] == "created"
        assert body["claim"]["scanToken"] is None
        assert body["checkoutUrl"] is None

        pending = await client.get("/api/v1/vendor/pending-confirmations", headers=headers_for(vendor))
        assert [item["id"] for item in pending.json()] == [claim_id]

        confirm_url = f"/api/v1/vendor/claims/{claim_id}/confirm-payment"
        first = await client.post(confirm_url, headers=headers_for(vendor))
        second = await client.post(confirm_url, headers=headers_for(vendor))
        assert first.status_code == 200
        assert first.json()["changed"] is True
        assert second.json()["changed"] is False
        assert second.json()["claim"]["status"] == "deposit_confirmed"

        detail = (await client.get(f"/api/v1/claims/{claim_id}", headers=headers_for(customer))).json()
        assert detail["scanUrl"].endswith(detail["scanToken"])
        code = detail["redemptionCode"]

        lookup = await client.get(f"/api/v1/redeem/{code.lower()}", headers=headers_for(vendor))
        assert lookup.status_code == 200
        assert lookup.json()["status"] == "valid"
        assert lookup.json()["remainingBalance"] == "15.00"

        redeemed = await client.post(f"/api/v1/redeem/{detail['scanToken']}", headers=headers_for(vendor))
        assert redeemed.status_code == 200
        assert redeemed.json()["status"] == "redeemed"
        assert redeemed.json()["deal"]["title"] == deal.title

        again = await client.post(f"/api/v1/redeem/{code}", headers=headers_for(vendor))
        assert again.status_code == 409
        assert again.json()["code"] == "already_redeemed"

        listed = await client.get("/api/v1/claims", params={"status": "redeemed"}, headers=headers_for(customer))
        assert [item["id"] for item in listed.json()] == [claim_id]

        capacity = await client.get(f"/api/v1/deals/{deal.id}/capacity", headers=headers_for(vendor))
        assert capacity.json()["claimsCount"] == 1
        assert capacity.json()["remaining"] == 9


@pytest.mark.asyncio
async def test_identity_and_role_are_enforced(app_with_db, make_customer, make_deal, headers_for):
    app, _ = app_with_db
    customer = await make_customer()
    deal = await make_deal()

    async with _client(app) as client:
        anonymous = await client.post("/api/v1/claims", json={"dealId": str(deal.id)})
        as_customer = await client.post("/api/v1/redeem/ABCDEFGH", headers=headers_for(customer))
        capacity = await client.get(f"/api/v1/deals/{deal.id}/capacity", headers=headers_for(customer))

    assert anonymous.status_code == 401
    assert as_customer.status_code == 403
    assert capacity.status_code == 403


@pytest.mark.asyncio
async def test_full_deal_and_unknown_code_map_to_error_codes(app_with_db, make_customer, make_deal, headers_for):
    app, _ = app_with_db
    vendor = await make_customer(role=CustomerRoleEnum.VENDOR)
    first = await make_customer()
    second = await make_customer()
    deal = await make_deal(vendor=vendor, max_claims=1, deposit_amount=None)

    async with _client(app) as client:
        ok = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(first))
        full = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(second))
        unknown = await client.get("/api/v1/redeem/ZZZZ2222", headers=headers_for(vendor))

    assert ok.status_code == 201
    assert ok.json()["claim"]["status"] == "deposit_confirmed"
    assert full.status_code == 409
    assert full.json() == {"detail": "This deal has reached its maximum number of claims.", "code": "at_capacity"}
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "invalid_proof"


@pytest.mark.asyncio
async def test_cancel_and_transfer_endpoints(app_with_db, make_customer, make_deal, headers_for):
    app, _ = app_with_db
    alice = await make_customer(email="alice@example.com")
    bob = await make_customer(email="bob@example.com")
    transferable = await make_deal(deposit_amount=None, max_claims=3)
    cancellable = await make_deal(deposit_amount=None, max_claims=3)

    async with _client(app) as client:
        moved = (
            await client.post("/api/v1/claims", json={"dealId": str(transferable.id)}, headers=headers_for(alice))
        ).json()["claim"]
        kept = (
            await client.post("/api/v1/claims", json={"dealId": str(cancellable.id)}, headers=headers_for(alice))
        ).json()["claim"]

        transfer = await client.post(
            f"/api/v1/claims/{moved['id']}/transfer",
            json={"recipientEmail": "BOB@example.com"},
            headers=headers_for(alice),
        )
        assert transfer.status_code == 200
        assert transfer.json()["toCustomerId"] == str(bob.id)

        self_transfer = await client.post(
            f"/api/v1/claims/{kept['id']}/transfer",
            json={"recipientEmail": "alice@example.com"},
            headers=headers_for(alice),
        )
        assert self_transfer.json()["code"] == "self_transfer"

        bob_view = await client.get(f"/api/v1/claims/{moved['id']}", headers=headers_for(bob))
        alice_view = await client.get(f"/api/v1/claims/{moved['id']}", headers=headers_for(alice))
        assert bob_view.status_code == 200
        assert alice_view.status_code == 403

        history = await client.get(f"/api/v1/claims/{moved['id']}/transfers", headers=headers_for(alice))
        assert len(history.json()) == 1

        cancelled = await client.post(f"/api/v1/claims/{kept['id']}/cancel", headers=headers_for(alice))
        assert cancelled.status_code == 200
        assert cancelled.json()["slotReleased"] is True
        assert cancelled.json()["claim"]["status"] == "cancelled"

        gone = await client.get(f"/api/v1/claims/{kept['id']}", headers=headers_for(alice))
        assert gone.status_code == 404


@pytest.mark.asyncio
async def test_integrated_claim_opens_deposit_checkout(
    app_with_db, make_customer, make_deal, headers_for, monkeypatch
):
    app, session_factory = app_with_db
    customer = await make_customer()
    deal = await make_deal(payment_tier=PaymentTierEnum.INTEGRATED)
    captured: dict[str, object] = {}

    async def _fake_session(self, claim, deal, *, customer_email=None):
        captured["session_token"] = claim.session_token
        captured["email"] = customer_email
        return SimpleNamespace(id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")

    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(StripeDepositService, "create_deposit_session", _fake_session)

    async with _client(app) as client:
        response = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(customer))

    assert response.status_code == 201
    assert response.json()["checkoutUrl"] == "https://checkout.stripe.test/cs_test_123"
    assert captured["email"] == customer.email

    async with session_factory() as session:
        claim = await session.get(Claim, UUID(response.json()["claim"]["id"]))
        assert claim.checkout_session_id == "cs_test_123"
        assert claim.session_token == captured["session_token"]


@pytest.mark.asyncio
async def test_payment_gateway_failure_returns_bad_gateway(
    app_with_db, make_customer, make_deal, headers_for, monkeypatch
):
    app, _ = app_with_db
    customer = await make_customer()
    deal = await make_deal(payment_tier=PaymentTierEnum.INTEGRATED)

    async def _gateway_down(self, claim, deal, *, customer_email=None):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(StripeDepositService, "create_deposit_session", _gateway_down)

    async with _client(app) as client:
        response = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(customer))
        listed = await client.get("/api/v1/claims", params={"status": "pending"}, headers=headers_for(customer))

    assert response.status_code == 502
    assert response.json()["code"] == "payment_gateway_unavailable"
    assert len(listed.json()) == 1


@pytest.mark.asyncio
async def test_checkout_can_be_reopened_after_gateway_failure(
    app_with_db, make_customer, make_deal, headers_for, monkeypatch
):
    app, session_factory = app_with_db
    customer = await make_customer()
    deal = await make_deal(payment_tier=PaymentTierEnum.INTEGRATED)
    gateway = {"up": False}

    async def _flaky_gateway(self, claim, deal, *, customer_email=None):
        if not gateway["up"]:
            raise stripe.APIConnectionError("connection reset")
        return SimpleNamespace(id="cs_test_retry", url="https://checkout.stripe.test/cs_test_retry")

    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(StripeDepositService, "create_deposit_session", _flaky_gateway)

    async with _client(app) as client:
        created = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(customer))
        assert created.status_code == 502
        (pending,) = (
            await client.get("/api/v1/claims", params={"status": "pending"}, headers=headers_for(customer))
        ).json()

        gateway["up"] = True
        reopened = await client.post(f"/api/v1/claims/{pending['id']}/checkout", headers=headers_for(customer))
        stranger = await client.post(
            f"/api/v1/claims/{pending['id']}/checkout", headers=headers_for(await make_customer())
        )

    assert reopened.status_code == 200
    assert reopened.json()["checkoutUrl"] == "https://checkout.stripe.test/cs_test_retry"
    assert reopened.json()["claim"]["status"] == "pending"
    assert stranger.status_code == 403

    async with session_factory() as session:
        claim = await session.get(Claim, UUID(pending["id"]))
        assert claim.checkout_session_id == "cs_test_retry"


@pytest.mark.asyncio
async def test_checkout_rejects_manual_and_confirmed_claims(app_with_db, make_customer, make_deal, headers_for):
    app, _ = app_with_db
    customer = await make_customer()
    manual_deal = await make_deal()
    free_deal = await make_deal(deposit_amount=Decimal("0.00"), payment_tier=PaymentTierEnum.INTEGRATED)

    async with _client(app) as client:
        manual = await client.post("/api/v1/claims", json={"dealId": str(manual_deal.id)}, headers=headers_for(customer))
        free = await client.post("/api/v1/claims", json={"dealId": str(free_deal.id)}, headers=headers_for(customer))
        manual_checkout = await client.post(
            f"/api/v1/claims/{manual.json()['claim']['id']}/checkout", headers=headers_for(customer)
        )
        free_checkout = await client.post(
            f"/api/v1/claims/{free.json()['claim']['id']}/checkout", headers=headers_for(customer)
        )

    assert manual_checkout.status_code == 409
    assert manual_checkout.json()["code"] == "payment_tier_mismatch"
    assert free.json()["claim"]["depositConfirmed"] is True
    assert free_checkout.status_code == 409
    assert free_checkout.json()["code"] == "deposit_already_confirmed"


@pytest.mark.asyncio
async def test_storage_failure_returns_retry_message(
    app_with_db, make_customer, make_deal, headers_for, monkeypatch
):
    app, _ = app_with_db
    customer = await make_customer()
    deal = await make_deal()

    async def _db_down(self, *args, **kwargs):
        raise OperationalError("INSERT INTO claims", {}, Exception("connection refused"))

    monkeypatch.setattr(ClaimLifecycleService, "create_claim", _db_down)

    async with _client(app) as client:
        response = await client.post("/api/v1/claims", json={"dealId": str(deal.id)}, headers=headers_for(customer))

    assert response.status_code == 503
    assert response.json()["code"] == "temporarily_unavailable"
    assert "try again" in response.json()["detail"]
