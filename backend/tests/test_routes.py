"""
HTTP surface: auth guards, status codes and error bodies, with the route
singletons swapped for services backed by in-memory repositories.
"""
import asyncio
import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from auth import create_access_token


def _headers(user_id="user-1", role="user"):
    token = create_access_token(user_id, email=f"{user_id}@example.com", role=role)
    return {"Authorization": f"Bearer {token}"}


USER = _headers()
OTHER = _headers("user-2")
ADMIN = _headers("admin-1", role="admin")


@pytest.fixture
def api(client, services):
    with patch("routes.plans.plan_registry", services.plans), \
            patch("routes.billing.subscription_service", services.subscriptions), \
            patch("routes.billing.payment_service", services.payments), \
            patch("routes.billing.usage_ledger", services.usage), \
            patch("routes.billing.entitlement_resolver", services.entitlements), \
            patch("routes.admin_billing.subscription_service", services.subscriptions), \
            patch("routes.admin_billing.payment_service", services.payments), \
            patch("routes.webhooks.webhook_service", services.webhooks):
        yield client


@pytest.fixture
def plan(plan_factory):
    return asyncio.run(plan_factory())


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# =============================================================================
# Auth guards
# =============================================================================

def test_user_routes_require_token(api):
    assert api.get("/api/subscriptions/active").status_code == 401
    assert api.get("/api/subscriptions/active", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_expired_token_is_rejected(api):
    token = create_access_token("user-1", expires_delta=timedelta(seconds=-5))

    assert api.get("/api/subscriptions/active", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_overridden_auth_dependency(api):
    from server import app
    from middleware import require_auth

    app.dependency_overrides[require_auth] = lambda: {"user_id": "user-9", "role": "user"}
    try:
        response = api.get("/api/subscriptions/active")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json() == {"subscription": None}


def test_admin_routes_reject_users(api):
    assert api.get("/api/admin/billing/stats", headers=USER).status_code == 403
    assert api.post("/api/subscriptions/plans", json={}, headers=USER).status_code == 403
    assert api.get("/api/admin/billing/stats", headers=ADMIN).status_code == 200


# =============================================================================
# Plans
# =============================================================================

def test_admin_creates_plan_and_public_lists_it(api, gateway):
    response = api.post(
        "/api/subscriptions/plans",
        json={"name": "Team", "plan_type": "professional", "price": {"amount": 2499}},
        headers=ADMIN,
    )

    assert response.status_code == 201
    created = response.json()
    assert created["external_plan_id"].startswith("plan_")
    assert gateway.called("create_plan") == 1

    listing = api.get("/api/subscriptions/plans").json()
    assert [p["name"] for p in listing["items"]] == ["Team"]
    assert api.get(f"/api/subscriptions/plans/{created['plan_id']}").status_code == 200


def test_invalid_plan_body_is_a_400(api):
    response = api.post(
        "/api/subscriptions/plans",
        json={"name": "Team", "plan_type": "professional", "price": {"amount": 10}, "colour": "blue"},
        headers=ADMIN,
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_unknown_plan_is_a_404(api):
    assert api.get("/api/subscriptions/plans/missing").status_code == 404


def test_short_search_returns_nothing(api, plan):
    assert api.get("/api/subscriptions/plans/search", params={"q": "S"}).json()["items"] == []
    assert len(api.get("/api/subscriptions/plans/search", params={"q": "Starter"}).json()["items"]) == 1


# =============================================================================
# Subscriptions
# =============================================================================

def test_subscribe_then_conflict(api, plan):
    first = api.post("/api/subscriptions/subscribe", json={"plan_id": plan.plan_id}, headers=USER)
    second = api.post("/api/subscriptions/subscribe", json={"plan_id": plan.plan_id}, headers=USER)

    assert first.status_code == 201
    assert first.json()["status"] == "active"
    assert second.status_code == 409
    assert second.json()["error_code"] == "ALREADY_SUBSCRIBED"

    active = api.get("/api/subscriptions/active", headers=USER).json()
    assert active["subscription"]["subscription_id"] == first.json()["subscription_id"]
    assert api.get("/api/subscriptions/active", headers=OTHER).json() == {"subscription": None}


def test_subscribe_rejects_unknown_payment_method(api, plan):
    response = api.post(
        "/api/subscriptions/subscribe",
        json={"plan_id": plan.plan_id, "payment_method": "cheque"},
        headers=USER,
    )

    assert response.status_code == 422


def test_only_owner_may_cancel(api, plan):
    subscription_id = api.post(
        "/api/subscriptions/subscribe", json={"plan_id": plan.plan_id}, headers=USER,
    ).json()["subscription_id"]

    forbidden = api.post(f"/api/subscriptions/{subscription_id}/cancel", headers=OTHER)
    cancelled = api.post(
        f"/api/subscriptions/{subscription_id}/cancel", json={"reason": "Too expensive"}, headers=USER,
    )

    assert forbidden.status_code == 403
    assert cancelled.status_code == 200
    assert cancelled.json()["outcome"] == "cancelled"
    assert cancelled.json()["subscription"]["status"] == "cancelled"


def test_protected_settings_are_a_400(api, plan):
    subscription_id = api.post(
        "/api/subscriptions/subscribe", json={"plan_id": plan.plan_id}, headers=USER,
    ).json()["subscription_id"]

    response = api.patch(f"/api/subscriptions/{subscription_id}/settings", json={"status": "active"}, headers=USER)

    assert response.status_code == 400


def test_usage_and_entitlement(api, plan):
    assert api.get("/api/subscriptions/usage", headers=USER).status_code == 404
    assert api.get("/api/subscriptions/entitlement", headers=USER).json()["source"] == "free_tier"

    api.post("/api/subscriptions/subscribe", json={"plan_id": plan.plan_id}, headers=USER)

    usage = api.get("/api/subscriptions/usage/projects", headers=USER).json()
    assert usage["resource_type"] == "projects"
    assert usage["current"] == 0
    assert usage["remaining"] == usage["limit"]
    assert api.get("/api/subscriptions/entitlement", headers=USER).json()["source"] == "subscription"


# =============================================================================
# Payments
# =============================================================================

def _captured(services, user_id="user-1"):
    entity = {"id": "pay_001", "amount": 99900, "currency": "INR", "status": "captured", "method": "card"}
    payment, _ = asyncio.run(services.payments.record_gateway_payment(entity, user_id=user_id))
    return payment


def test_verify_rejects_bad_signature(api):
    response = api.post(
        "/api/subscriptions/payment/verify",
        json={"order_id": "order_1", "payment_id": "pay_1", "signature": "forged"},
        headers=USER,
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "INVALID_PAYMENT_SIGNATURE"


def test_payment_visible_to_owner_only(api, services):
    payment = _captured(services)

    assert api.get(f"/api/subscriptions/payments/{payment.payment_id}", headers=USER).status_code == 200
    assert api.get(f"/api/subscriptions/payments/{payment.payment_id}", headers=OTHER).status_code == 403
    assert api.get("/api/subscriptions/payments", headers=USER).json()["total"] == 1


def test_admin_refund(api, services):
    payment = _captured(services)

    response = api.post(
        f"/api/admin/billing/payments/{payment.payment_id}/refund",
        json={"amount": 100, "reason": "goodwill"},
        headers=ADMIN,
    )
    over = api.post(
        f"/api/admin/billing/payments/{payment.payment_id}/refund", json={"amount": 5000}, headers=ADMIN,
    )

    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "partially_refunded"
    assert response.json()["payment"]["refund"]["refunded_by"] == "admin-1"
    assert over.status_code == 409


def test_unknown_job_is_a_404(api):
    response = api.post("/api/admin/billing/jobs/rebuild_everything", headers=ADMIN)

    assert response.status_code == 404
    assert response.json()["error_code"] == "JOB_NOT_FOUND"


# =============================================================================
# Webhooks
# =============================================================================

def test_webhook_signature_mismatch_is_a_401(api):
    response = api.post(
        "/api/webhooks/razorpay",
        content=b'{"event": "subscription.activated"}',
        headers={"X-Razorpay-Signature": "forged"},
    )

    assert response.status_code == 401


def test_webhook_acknowledges_signed_delivery(api, gateway):
    body = json.dumps({"event": "invoice.paid", "payload": {}}).encode()

    response = api.post(
        "/api/webhooks/razorpay",
        content=body,
        headers={"X-Razorpay-Signature": gateway.sign_webhook(body), "X-Razorpay-Event-Id": "evt_http_1"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "received": True, "event_id": "evt_http_1", "event_type": "invoice.paid", "status": "ignored",
    }
