"""
Subscription lifecycle: subscribe, state machine edges, cancellation outcomes,
user pause/resume, settings patches and gateway cancellation sync.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from models import QuotaSpec, TrialPolicy, utcnow
from services.subscription_service import can_transition
from utils.errors import ValidationError, ConflictError, TransientError


@pytest.fixture
def trial_plan(plan_factory):
    async def _create():
        return await plan_factory(
            name="Trial Plan",
            external_plan_id="plan_ext_trial",
            trial=TrialPolicy(enabled=True, days=14),
            quotas={"projects": QuotaSpec(max=10)},
        )
    return _create


# =============================================================================
# Subscribe
# =============================================================================

@pytest.mark.asyncio
async def test_subscribe_with_trial_starts_trialing(services, gateway, repos, trial_plan):
    plan = await trial_plan()

    subscription = await services.subscriptions.subscribe(
        "user-1", plan.plan_id, customer={"email": "user1@example.com", "name": "User One"},
    )

    assert subscription.status == "trialing"
    assert subscription.is_live is True
    assert subscription.trial.used is False
    assert subscription.trial.end_date - subscription.trial.start_date == timedelta(days=14)
    assert subscription.next_billing_date == subscription.trial.end_date
    assert subscription.usage["projects"].limit == 10
    assert subscription.usage["projects"].current == 0
    assert [h.action for h in subscription.history] == ["created"]
    assert gateway.called("create_customer") == 1
    assert gateway.called("create_subscription") == 1

    billing = await repos.user_billing.get("user-1")
    assert billing.external_customer_id == subscription.external_customer_id
    assert billing.subscription_status == "trialing"


@pytest.mark.asyncio
async def test_subscribe_reuses_existing_gateway_customer(services, gateway, repos, plan_factory):
    plan = await plan_factory()
    await repos.user_billing.upsert("user-1", {"external_customer_id": "cust_existing"})

    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id, customer={"email": "a@b.c"})

    assert subscription.external_customer_id == "cust_existing"
    assert gateway.called("create_customer") == 0


@pytest.mark.asyncio
async def test_subscribe_without_trial_is_active(services, plan_factory):
    plan = await plan_factory()

    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    assert subscription.status == "active"
    assert subscription.trial is None
    assert subscription.next_billing_date - subscription.start_date == timedelta(days=30)


@pytest.mark.asyncio
async def test_second_live_subscription_conflicts(services, plan_factory):
    plan = await plan_factory()
    await services.subscriptions.subscribe("user-1", plan.plan_id)

    with pytest.raises(ConflictError) as exc:
        await services.subscriptions.subscribe("user-1", plan.plan_id)
    assert exc.value.error_code == "ALREADY_SUBSCRIBED"


@pytest.mark.asyncio
async def test_subscribe_to_inactive_plan_is_rejected(services, plan_factory):
    plan = await plan_factory(status="inactive")

    with pytest.raises(ValidationError) as exc:
        await services.subscriptions.subscribe("user-1", plan.plan_id)
    assert exc.value.error_code == "PLAN_NOT_ACTIVE"


@pytest.mark.asyncio
async def test_subscribe_rejects_unknown_payment_method(services, plan_factory):
    plan = await plan_factory()

    with pytest.raises(ValidationError):
        await services.subscriptions.subscribe("user-1", plan.plan_id, payment_method="cheque")


@pytest.mark.asyncio
async def test_subscribe_gateway_failure_stores_nothing(services, gateway, repos, plan_factory):
    plan = await plan_factory()
    gateway.failing.add("create_subscription")

    with pytest.raises(TransientError):
        await services.subscriptions.subscribe("user-1", plan.plan_id)
    assert repos.subscriptions.docs == {}


@pytest.mark.asyncio
async def test_subscribe_cancels_remote_when_local_save_fails(services, gateway, repos, plan_factory):
    plan = await plan_factory()
    repos.subscriptions.insert = AsyncMock(side_effect=RuntimeError("write failed"))

    with pytest.raises(TransientError):
        await services.subscriptions.subscribe("user-1", plan.plan_id)
    assert gateway.called("cancel_subscription") == 1


@pytest.mark.asyncio
async def test_subscribe_after_cancellation_is_allowed(services, plan_factory):
    plan = await plan_factory()
    first = await services.subscriptions.subscribe("user-1", plan.plan_id)
    await services.subscriptions.cancel(first.subscription_id, reason="switching")

    second = await services.subscriptions.subscribe("user-1", plan.plan_id)

    assert second.subscription_id != first.subscription_id
    assert (await services.subscriptions.get_active_subscription("user-1")).subscription_id == second.subscription_id


# =============================================================================
# State machine
# =============================================================================

def test_transition_table():
    assert can_transition("trialing", "active")
    assert can_transition("active", "past_due")
    assert can_transition("past_due", "active")
    assert can_transition("paused", "cancelled")
    assert not can_transition("trialing", "paused")
    assert not can_transition("cancelled", "active")
    assert not can_transition("completed", "active")
    assert not can_transition("paused", "past_due")


@pytest.mark.asyncio
async def test_activate_trialing_records_one_history_entry(services, trial_plan):
    plan = await trial_plan()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    period_end = utcnow() + timedelta(days=30)

    activated, changed = await services.subscriptions.activate(subscription.subscription_id, period_end)
    again, changed_again = await services.subscriptions.activate(subscription.subscription_id, period_end)

    assert changed is True
    assert changed_again is False
    assert activated.status == "active"
    assert activated.trial.used is True
    assert activated.next_billing_date == period_end
    assert [h.action for h in again.history] == ["created", "activated"]


@pytest.mark.asyncio
async def test_cancelled_to_active_conflicts_and_leaves_state(services, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    await services.subscriptions.cancel(subscription.subscription_id)
    before = await services.subscriptions.get_subscription(subscription.subscription_id)

    with pytest.raises(ConflictError) as exc:
        await services.subscriptions.activate(subscription.subscription_id)
    assert exc.value.error_code == "INVALID_TRANSITION"

    after = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert after.status == "cancelled"
    assert len(after.history) == len(before.history)


@pytest.mark.asyncio
async def test_past_due_then_recovered(services, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    past_due, _ = await services.subscriptions.mark_past_due(subscription.subscription_id)
    assert past_due.status == "past_due"
    assert past_due.is_live is False
    assert await services.subscriptions.get_active_subscription("user-1") is None

    recovered, changed = await services.subscriptions.activate(subscription.subscription_id)
    assert changed is True
    assert recovered.status == "active"
    assert recovered.history[-1].action == "recovered"


@pytest.mark.asyncio
async def test_renew_is_keyed_on_billing_date(services, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    new_end = subscription.next_billing_date + timedelta(days=30)

    renewed, changed = await services.subscriptions.renew(subscription.subscription_id, new_end)
    replay, replay_changed = await services.subscriptions.renew(subscription.subscription_id, new_end)

    assert changed is True
    assert replay_changed is False
    assert renewed.next_billing_date == new_end
    assert replay.next_billing_date == new_end
    assert sum(1 for h in replay.history if h.action == "renewed") == 1


@pytest.mark.asyncio
async def test_complete_is_terminal(services, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    completed, _ = await services.subscriptions.complete(subscription.subscription_id)
    assert completed.status == "completed"
    assert completed.completed_at is not None

    with pytest.raises(ConflictError):
        await services.subscriptions.pause(subscription.subscription_id)


# =============================================================================
# Cancellation outcomes
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_success(services, gateway, repos, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    result = await services.subscriptions.cancel(
        subscription.subscription_id, reason="too expensive", feedback="nice app", cancelled_by="user-1",
    )

    assert result.outcome == "cancelled"
    assert result.subscription.status == "cancelled"
    assert result.subscription.gateway_sync.status == "synced"
    assert result.subscription.cancellation.reason == "too expensive"
    assert result.subscription.auto_renew is False
    assert gateway.called("cancel_subscription") == 1
    assert (await repos.user_billing.get("user-1")).subscription_status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_remote_failure_keeps_local_cancel_pending(services, gateway, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    gateway.failing.add("cancel_subscription")

    result = await services.subscriptions.cancel(subscription.subscription_id)

    assert result.outcome == "local_cancelled_remote_pending"
    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.status == "cancelled"
    assert stored.gateway_sync.status == "pending"
    assert stored.gateway_sync.attempts == 1

    gateway.failing.clear()
    assert await services.subscriptions.sync_pending_cancellations() == 1
    synced = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert synced.gateway_sync.status == "synced"
    assert synced.gateway_sync.attempts == 2


@pytest.mark.asyncio
async def test_cancel_local_failure_changes_nothing(services, gateway, repos, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    repos.subscriptions.fail_transitions = True

    result = await services.subscriptions.cancel(subscription.subscription_id)

    assert result.outcome == "failed"
    assert gateway.called("cancel_subscription") == 0
    assert (await services.subscriptions.get_subscription(subscription.subscription_id)).status == "active"


@pytest.mark.asyncio
async def test_pending_cancellation_gives_up_after_max_attempts(services, gateway, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    gateway.failing.add("cancel_subscription")
    await services.subscriptions.cancel(subscription.subscription_id)

    for _ in range(10):
        await services.subscriptions.sync_pending_cancellations()

    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.gateway_sync.status == "failed"
    assert stored.gateway_sync.attempts == 5


# =============================================================================
# User pause / resume / settings
# =============================================================================

@pytest.mark.asyncio
async def test_pause_and_resume_by_user(services, gateway, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    paused = await services.subscriptions.pause_by_user(subscription.subscription_id)
    assert paused.status == "paused"
    assert paused.paused_at is not None

    resumed = await services.subscriptions.resume_by_user(subscription.subscription_id)
    assert resumed.status == "active"
    assert resumed.paused_at is None
    assert gateway.called("pause_subscription") == 1
    assert gateway.called("resume_subscription") == 1


@pytest.mark.asyncio
async def test_pause_gateway_failure_leaves_subscription_active(services, gateway, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)
    gateway.failing.add("pause_subscription")

    with pytest.raises(TransientError):
        await services.subscriptions.pause_by_user(subscription.subscription_id)
    assert (await services.subscriptions.get_subscription(subscription.subscription_id)).status == "active"


@pytest.mark.asyncio
async def test_update_settings_allows_only_settings_fields(services, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    updated = await services.subscriptions.update_settings(
        subscription.subscription_id, {"auto_renew": False, "payment_method": "upi"}, updated_by="user-1",
    )
    assert updated.auto_renew is False
    assert updated.payment_method == "upi"
    assert updated.history[-1].action == "settings_updated"

    for patch in ({"status": "active"}, {"usage": {}}, {"auto_renew": True, "features": {"whiteLabel": True}}):
        with pytest.raises(ValidationError) as exc:
            await services.subscriptions.update_settings(subscription.subscription_id, patch)
        assert exc.value.error_code == "PROTECTED_FIELDS"

    stored = await services.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.auto_renew is False
    assert stored.features["whiteLabel"] is False


@pytest.mark.asyncio
async def test_get_expiring_lists_live_subscriptions_in_window(services, plan_factory):
    plan = await plan_factory()
    subscription = await services.subscriptions.subscribe("user-1", plan.plan_id)

    assert await services.subscriptions.get_expiring(days=7) == []
    expiring = await services.subscriptions.get_expiring(days=31)
    assert [s.subscription_id for s in expiring] == [subscription.subscription_id]
