import hashlib
import hmac
import json
import time

import pytest
from redis.exceptions import RedisError

from config import settings
from main import app
from routers import rate_limit


def _signed_headers(payload: str, secret: str) -> dict:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _checkout_event(event_id: str, user_id: str, amount_total: int, customer: str = "cus_api") -> str:
    return json.dumps(
        {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "amount_total": amount_total,
                    "customer": customer,
                    "payment_intent": "pi_api_1",
                    "metadata": {"user_id": user_id},
                }
            },
        }
    )


@pytest.mark.asyncio
async def test_root_and_liveness(integration_client):
    client, _ = integration_client
    root = await client.get("/")
    assert root.status_code == 200
    assert root.json()["name"] == "Credit Engine API"

    live = await client.get("/health/live")
    assert live.json() == {"alive": True}


@pytest.mark.asyncio
async def test_grant_consume_and_summary_flow(integration_client):
    client, _ = integration_client

    granted = await client.post("/billing/grant", json={"user_id": "api-user", "amount": 10, "kind": "purchase"})
    assert granted.status_code == 200
    assert granted.json()["balance_after"] == 10

    configured = await client.put(
        "/usage/rate-limit/config",
        json={"resource_id": "wedding", "tier": "free", "hourly_limit": 2, "daily_limit": 10},
    )
    assert configured.status_code == 200
    assert configured.json()["hourly_limit"] == 2

    first = await client.post("/usage/consume", json={"user_id": "api-user", "resource_id": "wedding", "credit_cost": 3})
    assert first.status_code == 200
    assert first.json()["remaining_credits"] == 7
    second = await client.post("/usage/consume", json={"user_id": "api-user", "resource_id": "wedding", "credit_cost": 3})
    assert second.json()["remaining_credits"] == 4

    limited = await client.post("/usage/consume", json={"user_id": "api-user", "resource_id": "wedding", "credit_cost": 3})
    assert limited.status_code == 429
    assert limited.json()["detail"]["window"] == "hourly"
    assert "X-RateLimit-Reset" in limited.headers

    completed = await client.post(f"/usage/{first.json()['usage_id']}/complete", json={"status": "completed"})
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    summary = await client.get("/billing/credits", params={"user_id": "api-user"})
    body = summary.json()
    assert body["total_available"] == 4
    assert body["total_purchased"] == 10
    assert body["total_used_all_time"] == 6

    transactions = await client.get("/billing/transactions", params={"user_id": "api-user", "limit": 1})
    assert transactions.json()["total_count"] == 3
    assert len(transactions.json()["entries"]) == 1

    status = await client.get(
        "/usage/rate-limit", params={"identifier": "api-user", "resource_id": "wedding", "tier": "free"}
    )
    assert status.json()["allowed"] is False
    assert status.json()["limits"]["source"] == "config"


@pytest.mark.asyncio
async def test_insufficient_credits_maps_to_402(integration_client):
    client, _ = integration_client
    response = await client.post("/usage/consume", json={"user_id": "api-poor", "resource_id": "wedding", "credit_cost": 1})
    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["error"] == "insufficient_credits"
    assert detail["required"] == 1
    assert detail["available"] == 0


@pytest.mark.asyncio
async def test_deduct_refund_and_unknown_usage(integration_client):
    client, _ = integration_client
    await client.post("/billing/grant", json={"user_id": "api-admin", "amount": 6, "kind": "purchase"})

    deducted = await client.post("/billing/deduct", json={"user_id": "api-admin", "amount": 2})
    assert deducted.json()["balance_after"] == 4

    refunded = await client.post("/billing/refund", json={"user_id": "api-admin", "amount": 10, "external_ref": "ch_9"})
    assert refunded.json()["balance_after"] == 0

    missing = await client.get("/usage/does-not-exist")
    assert missing.status_code == 404

    bad_status = await client.post("/usage/does-not-exist/complete", json={"status": "cancelled"})
    assert bad_status.status_code == 422


@pytest.mark.asyncio
async def test_referral_endpoints(integration_client):
    client, _ = integration_client
    created = await client.post("/referrals", json={"referrer_user_id": "ref-a", "referred_email": "b@example.com"})
    assert created.status_code == 200

    completed = await client.post("/referrals/complete", json={"referrer_user_id": "ref-a", "referred_user_id": "ref-b"})
    assert completed.json()["completed"] is True
    again = await client.post("/referrals/complete", json={"referrer_user_id": "ref-a", "referred_user_id": "ref-b"})
    assert again.json() == {"completed": False, "referral": None}

    stats = await client.get("/referrals/stats", params={"user_id": "ref-a"})
    assert stats.json()["completed"] == 1
    welcome = await client.get("/billing/credits", params={"user_id": "ref-b"})
    assert welcome.json()["bonus_credits"] == 10


@pytest.mark.asyncio
async def test_webhook_rejected_when_disabled(integration_client, monkeypatch):
    client, _ = integration_client
    monkeypatch.setattr(settings, "BILLING_WEBHOOKS_ENABLED", False)
    response = await client.post("/webhooks/stripe", content="{}")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_webhook_signature_checks(integration_client, webhook_secret):
    client, _ = integration_client
    payload = _checkout_event("evt_sig", "hook-user", 999)

    missing = await client.post("/webhooks/stripe", content=payload)
    assert missing.status_code == 400

    forged = await client.post("/webhooks/stripe", content=payload, headers=_signed_headers(payload, "whsec_wrong"))
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_signed_purchase_webhook_credits_once(integration_client, webhook_secret):
    client, _ = integration_client
    await client.get("/billing/credits", params={"user_id": "hook-user"})
    payload = _checkout_event("evt_api_1", "hook-user", 999)

    responses = [
        await client.post("/webhooks/stripe", content=payload, headers=_signed_headers(payload, webhook_secret))
        for _ in range(3)
    ]

    assert [response.status_code for response in responses] == [200, 200, 200]
    assert responses[0].json()["applied"] is True
    assert responses[0].json()["credits"] == 25
    assert [response.json()["duplicate"] for response in responses] == [False, True, True]

    summary = await client.get("/billing/credits", params={"user_id": "hook-user"})
    assert summary.json()["paid_credits"] == 25


@pytest.mark.asyncio
async def test_failed_webhook_is_listed_for_reconciliation(integration_client, webhook_secret):
    client, _ = integration_client
    payload = _checkout_event("evt_api_orphan", "ghost", 499, customer="cus_ghost")

    response = await client.post("/webhooks/stripe", content=payload, headers=_signed_headers(payload, webhook_secret))
    assert response.status_code == 500

    failed = await client.get("/webhooks/events/failed")
    assert failed.json()["count"] == 1
    assert failed.json()["events"][0]["external_event_id"] == "evt_api_orphan"


@pytest.mark.asyncio
async def test_partial_refund_webhook_is_prorated(integration_client, webhook_secret):
    client, _ = integration_client
    await client.get("/billing/credits", params={"user_id": "refund-user"})
    purchase = _checkout_event("evt_api_buy", "refund-user", 999)
    await client.post("/webhooks/stripe", content=purchase, headers=_signed_headers(purchase, webhook_secret))
    refund = json.dumps(
        {
            "id": "evt_api_refund",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_api_1",
                    "amount": 999,
                    "amount_refunded": 500,
                    "payment_intent": "pi_api_1",
                    "metadata": {"user_id": "refund-user"},
                }
            },
        }
    )

    response = await client.post("/webhooks/stripe", content=refund, headers=_signed_headers(refund, webhook_secret))

    assert response.status_code == 200
    assert response.json()["credits"] == 12
    summary = await client.get("/billing/credits", params={"user_id": "refund-user"})
    assert summary.json()["paid_credits"] == 13


@pytest.mark.asyncio
async def test_admin_throttle_falls_back_to_local_counters(integration_client, monkeypatch):
    client, _ = integration_client

    async def _redis_down(*args, **kwargs):
        raise RedisError("connection refused")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", _redis_down)
    monkeypatch.setattr(settings, "ADMIN_RATE_LIMIT_PER_HOUR", 1)
    app.state.disable_rate_limits = False

    first = await client.post("/billing/grant", json={"user_id": "throttled", "amount": 1})
    second = await client.post("/billing/grant", json={"user_id": "throttled", "amount": 1})

    assert first.status_code == 200
    assert second.status_code == 429
    assert "Retry-After" in second.headers


@pytest.mark.asyncio
async def test_forwarded_header_cannot_dodge_the_admin_throttle(integration_client, monkeypatch):
    client, _ = integration_client

    async def _redis_down(*args, **kwargs):
        raise RedisError("connection refused")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", _redis_down)
    monkeypatch.setattr(settings, "ADMIN_RATE_LIMIT_PER_HOUR", 1)
    app.state.disable_rate_limits = False

    first = await client.post(
        "/billing/grant",
        json={"user_id": "spoofer", "amount": 1},
        headers={"X-Forwarded-For": "203.0.113.1"},
    )
    second = await client.post(
        "/billing/grant",
        json={"user_id": "spoofer", "amount": 1},
        headers={"X-Forwarded-For": "203.0.113.2"},
    )

    assert first.status_code == 200
    assert second.status_code == 429


@pytest.mark.asyncio
async def test_local_counters_drop_expired_windows():
    rate_limit._local_counters["credits:throttle:stale:10.0.0.1"] = (7, time.time() - 5)

    allowed, retry_after = await rate_limit._consume_local_quota("credits:throttle:fresh:10.0.0.2", 1, 60)

    assert allowed is True
    assert 0 < retry_after <= 60
    assert "credits:throttle:stale:10.0.0.1" not in rate_limit._local_counters
    assert rate_limit._local_counters["credits:throttle:fresh:10.0.0.2"][0] == 1
