"""
Scheduled jobs: renewal reminders (once per billing date) and pending cancellation sync.
"""
from unittest.mock import patch

import pytest

from job_runner import run_renewal_reminders, run_pending_cancellation_sync, JOB_RUNNERS


@pytest.fixture
def wired(services):
    with patch("services.subscription_service.subscription_service", services.subscriptions), \
            patch("services.notification_service.notification_service", services.notifications):
        yield services


def test_job_registry():
    assert set(JOB_RUNNERS) == {"renewal_reminders", "pending_cancellation_sync"}


@pytest.mark.asyncio
async def test_renewal_reminder_sent_once_per_billing_date(wired, repos, plan_factory):
    plan = await plan_factory()
    await wired.subscriptions.subscribe("user-1", plan.plan_id)

    first = await run_renewal_reminders(days=31)
    second = await run_renewal_reminders(days=31)

    assert first["count"] == 1
    assert second["count"] == 0
    reminders = [n for n in repos.notifications.items if n.title == "Subscription renewal"]
    assert len(reminders) == 1
    assert "999.00" in reminders[0].message


@pytest.mark.asyncio
async def test_no_reminder_outside_window(wired, plan_factory):
    plan = await plan_factory()
    await wired.subscriptions.subscribe("user-1", plan.plan_id)

    assert (await run_renewal_reminders(days=1))["count"] == 0


@pytest.mark.asyncio
async def test_pending_cancellations_are_synced(wired, gateway, plan_factory):
    plan = await plan_factory()
    subscription = await wired.subscriptions.subscribe("user-1", plan.plan_id)
    gateway.failing.add("cancel_subscription")
    await wired.subscriptions.cancel(subscription.subscription_id)
    gateway.failing.clear()

    result = await run_pending_cancellation_sync()

    assert result["count"] == 1
    stored = await wired.subscriptions.get_subscription(subscription.subscription_id)
    assert stored.gateway_sync.status == "synced"
