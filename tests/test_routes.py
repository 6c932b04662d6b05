"""HTTP surface: auth, error bodies, idempotent charges, webhooks, admin."""

import json

import pytest

from oracle_credits.services import ledger, users

pytestmark = pytest.mark.asyncio

WEBHOOK_HEADERS = {"x-fake-signature": "valid", "content-type": "application/json"}


async def test_balance_requires_session(client):
    r = await client.get("/v1/credits/balance")
    assert r.status_code == 401
    body = r.json()
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["request_id"]


async def test_balance(client, login, funded_user):
    login(client, funded_user)
    r = await client.get("/v1/credits/balance")
    assert r.status_code == 200
    assert r.json() == {"balance": 10, "total_earned": 10, "total_spent": 0}


async def test_ledger_page(client, login, funded_user):
    login(client, funded_user)
    await ledger.deduct(funded_user.id, 2, description="reading")
    r = await client.get("/v1/credits/ledger", params={"limit": 1, "kind": "SPEND"})
    page = r.json()
    assert page["limit"] == 1
    assert [e["amount"] for e in page["items"]] == [-2]
    assert page["next_offset"] == 1

    rest = (await client.get("/v1/credits/ledger", params={"offset": 1, "kind": "SPEND"})).json()
    assert rest["items"] == []
    assert rest["next_offset"] is None


async def test_charge_with_idempotency_key_charges_once(client, login, funded_user):
    login(client, funded_user)
    headers = {"Idempotency-Key": "reading-1"}
    body = {"spread_type": "THREE_CARD"}
    first = await client.post("/v1/readings/charge", json=body, headers=headers)
    second = await client.post("/v1/readings/charge", json=body, headers=headers)
    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert first.json()["cost"] == 3
    # 10 - 3 + 3 (first_reading achievement)
    assert await ledger.get_balance(funded_user.id) == 10

    reused = await client.post("/v1/readings/charge", json={"spread_type": "SINGLE"}, headers=headers)
    assert reused.status_code == 409
    assert reused.json()["error"]["code"] == "IDEMPOTENCY_KEY_REUSED"


async def test_charge_insufficient_credits(client, login, user):
    login(client, user)
    r = await client.post("/v1/readings/charge", json={"spread_type": "CELTIC_CROSS"})
    assert r.status_code == 402
    error = r.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"] == {"balance": 0, "required": 10}


async def test_checkout_and_duplicate_webhooks(client, login, user, fake_providers):
    login(client, user)
    r = await client.post("/v1/payments/checkout", json={"package_id": "basic", "provider": "stripe"})
    assert r.status_code == 200
    session_id = r.json()["session_id"]

    event = json.dumps({"type": "payment.completed", "payment_id": session_id, "credits": 25})
    first = await client.post("/v1/payments/webhooks/stripe", content=event, headers=WEBHOOK_HEADERS)
    second = await client.post("/v1/payments/webhooks/stripe", content=event, headers=WEBHOOK_HEADERS)
    assert first.json() == {"status": "ok", "transaction_status": "COMPLETED", "replayed": False}
    assert second.json()["replayed"] is True
    assert await ledger.get_balance(user.id) == 25


async def test_webhook_bad_signature(client, fake_providers):
    r = await client.post(
        "/v1/payments/webhooks/paypal",
        content=json.dumps({"type": "payment.completed", "payment_id": "x"}),
        headers={"x-fake-signature": "forged"},
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_WEBHOOK"


async def test_webhook_for_unknown_payment_is_not_detailed(client, fake_providers):
    event = json.dumps({"type": "payment.completed", "payment_id": "pay_123"})
    r = await client.post("/v1/payments/webhooks/stripe", content=event, headers=WEBHOOK_HEADERS)
    assert r.status_code == 400
    error = r.json()["error"]
    assert error == {"message": "Payment could not be processed", "code": "PAYMENT_NOT_PROCESSED", "details": {}}


async def test_webhook_unhandled_event_is_acknowledged(client, fake_providers):
    r = await client.post(
        "/v1/payments/webhooks/stripe", content=json.dumps({"type": "unhandled"}), headers=WEBHOOK_HEADERS
    )
    assert r.status_code == 200
    assert r.json() == {"status": "ignored"}


async def test_packages(client, fake_providers):
    r = await client.get("/v1/payments/packages")
    data = r.json()
    assert [p["id"] for p in data["packages"]] == ["starter", "basic", "popular", "value", "premium"]
    assert set(data["providers"]) == {"stripe", "paypal"}


async def test_admin_routes_require_admin(client, login, user):
    login(client, user)
    r = await client.post("/v1/admin/credits/adjust", json={"user_id": str(user.id), "amount": 5, "reason": "x"})
    assert r.status_code == 403


async def test_admin_adjust_and_audit(client, login, user):
    admin = await users.create_user("admin@example.com", role="admin")
    login(client, admin)

    zero = await client.post("/v1/admin/credits/adjust", json={"user_id": str(user.id), "amount": 0, "reason": "typo"})
    assert zero.status_code == 400
    assert zero.json()["error"]["code"] == "ZERO_AMOUNT"

    ok = await client.post("/v1/admin/credits/adjust", json={"user_id": str(user.id), "amount": 7, "reason": "goodwill"})
    assert ok.status_code == 200
    assert ok.json()["new_balance"] == 7

    audit = await client.get(f"/v1/admin/credits/{user.id}/audit")
    assert audit.json()["consistent"] is True
    assert audit.json()["cached_balance"] == 7

    listing = await client.get("/v1/admin/transactions", params={"user_id": str(user.id)})
    assert listing.json()["total"] == 1
    assert listing.json()["next_offset"] is None


async def test_daily_bonus_route(client, login, user):
    login(client, user)
    first = await client.post("/v1/rewards/daily-bonus")
    assert first.status_code == 200
    assert first.json()["new_balance"] == 2
    second = await client.post("/v1/rewards/daily-bonus")
    assert second.status_code == 409


async def test_referral_routes(client, login, user):
    login(client, user)
    me = (await client.get("/v1/referrals/me")).json()
    assert me["share_url"].endswith(f"/signup?ref={me['referral_code']}")
    assert me["bonus_credits"] == 5

    friend = await users.create_user("friend@example.com", "Friend")
    login(client, friend)
    r = await client.post("/v1/referrals/redeem", json={"code": me["referral_code"]})
    assert r.status_code == 200
    assert r.json()["referrer_rewarded"] is True
    assert (await client.post("/v1/referrals/redeem", json={"code": ""})).status_code == 422
