"""
Webhook ingestion: signature check, event-id de-duplication, replay safety,
orphan / ignored acknowledgements and per-event state changes.
"""
import json
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock

import pytest

from models import TrialPolicy
from utils.errors import AuthError, TransientError


def _event(event_type, subscription=None, payment=None):
    payload = {}
    if subscription is not None:
        payload["subscription"] = {"entity": subscription}
    if payment is not None:
        payload["payment"] = {"entity": payment}
    return {"entity": "event", "event": event_type, "payload": payload, "created_at": 1767225600}


def _payment(payment_id="pay_001", status="captured", **extra):
    entity = {"id": payment_id, "amount": 99900, "currency": "INR", "status": status, "method": "upi", "vpa": "user@upi"}
    entity.update(extra)
    return entity


def _unix(dt: datetime) -> int:
    return int(dt.timestamp())


@pytest.fixture
def deliver(services, gateway):
    async def _deliver(event, event_id=None, signature=None):
        body = json.dumps(event).encode()
        return await services.webhooks.process_webhook(body, signature or gateway.sign_webhook(body), event_id)
    return _deliver


@pytest.fixture
def subscribed(services, plan_factory):
    async def _create(trial=False):
        plan = await plan_factory(trial=TrialPolicy(enabled=trial, days=14))
        return await services.subscriptions.subscribe("user-1", plan.plan_id)
    return _create


# =============================================================================
# Verification
# =============================================================================

@pytest.mark.asyncio
async def test_tampered_body_is_rejected_without_changes(services, gateway, repos, subscribed):
    subscription = await subscribed(trial=True)
    event = _event("subscription.activated", {"id": subscription.external_subscription_id, "current_end": 1893456000})
    body = json.dumps(event).encode()
    signature = gateway.sign_webhook(body)
    tampered = body.replace(b"activated", b"cancelled")

    with pytest.raises(AuthError):
        await services.webhooks.process_webhook(tampered, signature, "evt_1")

    assert repos.events.docs == {}
    assert (await services.subscriptions.get_subscription(subscription.subscription_id)).status == "trialing"


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(services):
    with pytest.raises(AuthError):
        await services.webhooks.process_webhook(b"{}", None)


@pytest.mark.asyncio
async def test_signed_garbage_is_acknowledged_as_rejected(services, gateway, repos):
    body = b"not json"

    result = await services.webhooks.process_webhook(body, gateway.sign_webhook(body), "evt_garbage")

    assert result["status"] == "rejected"
    assert repos.events.docs["evt_garbage"]["status"] == "PROCESSED"
    assert repos.events.docs["evt_garbage"]["outcome"] == "rejected"
    assert await services.webhooks.process_webhook(body, gateway.sign_webhook(body), "evt_garbage") == {
        "event_id": "evt_garbage", "event_type": None, "status": "duplicate",
    }


# =============================================================================
# Subscription events
# =============================================================================

@pytest.mark.asyncio
async def test_activated_moves_trialing_to_active(services, deliver, subscribed):
    subscription = await subscribed(trial=True)
    period_end = datetime(2030, 1, 1, tzinfo=timezone.utc)
    event = _event("subscription.activated", {"id": subscription.external_subscription_id, "current_end": _unix(period_end)})

    result = await deliver(event, "evt_activated")
    replay = await deliver(event, "evt_activated_redelivered")

    assert result["status"] == "processed"
    assert replay["status"] == "noop"
    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.status == "active"
    assert stored.next_billing_date == period_end
    assert [h.action for h in stored.history].count("activated") == 1


@pytest.mark.asyncio
async def test_same_event_id_is_processed_once(deliver, repos, subscribed):
    subscription = await subscribed(trial=True)
    event = _event("subscription.activated", {"id": subscription.external_subscription_id, "current_end": 1893456000})

    first = await deliver(event, "evt_1")
    second = await deliver(event, "evt_1")

    assert first["status"] == "processed"
    assert second["status"] == "duplicate"
    assert repos.events.docs["evt_1"]["status"] == "PROCESSED"


@pytest.mark.asyncio
async def test_charged_renews_and_records_payment_once(services, deliver, repos, subscribed):
    subscription = await subscribed()
    new_end = subscription.next_billing_date + timedelta(days=30)
    event = _event(
        "subscription.charged",
        {"id": subscription.external_subscription_id, "current_end": _unix(new_end)},
        _payment("pay_renewal_1"),
    )

    result = await deliver(event)
    replay = await deliver(event)

    assert result["status"] == "processed"
    assert replay["status"] == "noop"
    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.next_billing_date == datetime.fromtimestamp(_unix(new_end), tz=timezone.utc)
    assert sum(1 for h in stored.history if h.action == "renewed") == 1
    payments = list(repos.payments.docs.values())
    assert len(payments) == 1
    assert payments[0]["subscription_id"] == subscription.subscription_id
    assert payments[0]["status"] == "captured"


@pytest.mark.asyncio
async def test_charged_recovers_past_due(services, deliver, subscribed):
    subscription = await subscribed()
    await services.subscriptions.mark_past_due(subscription.subscription_id)

    await deliver(_event(
        "subscription.charged",
        {"id": subscription.external_subscription_id, "current_end": 1893456000},
        _payment("pay_retry_1"),
    ))

    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.status == "active"
    assert stored.history[-1].action == "recovered"


@pytest.mark.asyncio
@pytest.mark.parametrize("event_type", ["subscription.halted", "subscription.pending"])
async def test_halted_and_pending_mark_past_due(services, deliver, subscribed, event_type):
    subscription = await subscribed()

    result = await deliver(_event(event_type, {"id": subscription.external_subscription_id}))

    assert result["subscription_status"] == "past_due"


@pytest.mark.asyncio
async def test_paused_then_resumed(services, deliver, subscribed):
    subscription = await subscribed()
    ext = {"id": subscription.external_subscription_id}

    paused = await deliver(_event("subscription.paused", ext))
    resumed = await deliver(_event("subscription.resumed", ext))

    assert paused["subscription_status"] == "paused"
    assert resumed["subscription_status"] == "active"


@pytest.mark.asyncio
async def test_cancelled_confirms_pending_gateway_sync(services, gateway, deliver, subscribed):
    subscription = await subscribed()
    gateway.failing.add("cancel_subscription")
    await services.subscriptions.cancel(subscription.subscription_id)

    result = await deliver(_event("subscription.cancelled", {"id": subscription.external_subscription_id}))

    assert result["status"] == "noop"
    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.status == "cancelled"
    assert stored.gateway_sync.status == "synced"


@pytest.mark.asyncio
async def test_completed_is_terminal(services, deliver, subscribed):
    subscription = await subscribed()

    await deliver(_event("subscription.completed", {"id": subscription.external_subscription_id}))
    late = await deliver(_event("subscription.activated", {"id": subscription.external_subscription_id}))

    assert late["status"] == "rejected"
    assert (await services.subscriptions.get_subscription(subscription.subscription_id)).status == "completed"


@pytest.mark.asyncio
async def test_updated_refreshes_dates_and_mirrors_active(services, deliver, repos, subscribed):
    subscription = await subscribed()
    await services.subscriptions.mark_past_due(subscription.subscription_id)
    new_end = datetime(2031, 6, 1, tzinfo=timezone.utc)

    result = await deliver(_event("subscription.updated", {"id": subscription.external_subscription_id, "current_end": _unix(new_end)}))

    assert result["status"] == "processed"
    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.next_billing_date == new_end
    assert stored.status == "past_due"
    assert (await repos.user_billing.get("user-1")).subscription_status == "active"


@pytest.mark.asyncio
async def test_unknown_subscription_is_an_orphan(deliver, repos):
    result = await deliver(_event("subscription.activated", {"id": "sub_unknown"}), "evt_orphan")

    assert result["status"] == "orphan"
    assert repos.events.docs["evt_orphan"]["status"] == "PROCESSED"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(deliver):
    result = await deliver(_event("invoice.paid"))

    assert result["status"] == "ignored"


# =============================================================================
# Payment events
# =============================================================================

@pytest.mark.asyncio
async def test_payment_captured_twice_gives_one_row(deliver, repos):
    event = _event("payment.captured", payment=_payment("pay_X", notes={"user_id": "user-1"}))

    first = await deliver(event, "evt_a")
    second = await deliver(event, "evt_b")

    assert first["status"] == "processed"
    assert second["status"] == "noop"
    rows = [d for d in repos.payments.docs.values() if d["external_payment_id"] == "pay_X"]
    assert len(rows) == 1
    assert rows[0]["status"] == "captured"
    assert rows[0]["user_id"] == "user-1"
    assert rows[0]["method"]["vpa"] == "user@upi"


@pytest.mark.asyncio
async def test_payment_failed_then_captured_out_of_order(deliver, repos, subscribed):
    subscription = await subscribed()
    entity = {"subscription_id": subscription.external_subscription_id}

    await deliver(_event("payment.captured", payment=_payment("pay_Y", **entity)))
    result = await deliver(_event("payment.failed", payment=_payment("pay_Y", status="failed", **entity)))

    assert result["status"] == "noop"
    row = next(d for d in repos.payments.docs.values() if d["external_payment_id"] == "pay_Y")
    assert row["status"] == "captured"
    assert row["subscription_id"] == subscription.subscription_id


@pytest.mark.asyncio
async def test_payment_without_owner_is_an_orphan(deliver, repos):
    result = await deliver(_event("payment.failed", payment=_payment("pay_Z", status="failed")))

    assert result["status"] == "orphan"
    assert repos.payments.docs == {}


@pytest.mark.asyncio
async def test_persistence_failure_is_transient_and_retryable(deliver, repos):
    event = _event("payment.captured", payment=_payment("pay_R", notes={"user_id": "user-1"}))
    original = repos.payments.insert_if_absent
    repos.payments.insert_if_absent = AsyncMock(side_effect=RuntimeError("primary stepped down"))

    with pytest.raises(TransientError):
        await deliver(event, "evt_retry")
    assert repos.events.docs["evt_retry"]["status"] == "FAILED"

    repos.payments.insert_if_absent = original
    result = await deliver(event, "evt_retry")

    assert result["status"] == "processed"
    assert repos.events.docs["evt_retry"]["status"] == "PROCESSED"


# =============================================================================
# Malformed signed events
# =============================================================================

@pytest.mark.asyncio
async def test_unreadable_period_end_is_rejected_not_retried(services, deliver, repos, subscribed):
    subscription = await subscribed(trial=True)
    event = _event("subscription.activated", {"id": subscription.external_subscription_id, "current_end": "soon"})

    result = await deliver(event, "evt_soon")

    assert result["status"] == "rejected"
    assert repos.events.docs["evt_soon"]["status"] == "PROCESSED"
    assert (await services.subscriptions.get_subscription(subscription.subscription_id)).status == "trialing"


@pytest.mark.asyncio
async def test_negative_payment_amount_is_rejected(deliver, repos):
    event = _event("payment.captured", payment=_payment("pay_neg", amount=-5, notes={"user_id": "user-1"}))

    result = await deliver(event, "evt_neg")

    assert result["status"] == "rejected"
    assert repos.payments.docs == {}


@pytest.mark.asyncio
async def test_non_object_entity_is_an_orphan(deliver):
    event = {"event": "subscription.activated", "payload": {"subscription": ["not", "an", "object"]}}

    result = await deliver(event, "evt_list")

    assert result["status"] == "orphan"
