"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

from types import SimpleNamespace

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from models import Plan, Money, QuotaSpec, TrialPolicy, default_quotas, default_features
from services.notification_service import NotificationService
from services.plan_registry import PlanRegistryService
from services.subscription_service import SubscriptionService
from services.payment_service import PaymentService
from services.webhook_service import WebhookService
from services.usage_ledger import UsageLedger
from services.entitlement import EntitlementResolver
from fakes import (
    InMemoryPlanRepository,
    InMemorySubscriptionRepository,
    InMemoryPaymentRepository,
    InMemoryWebhookEventRepository,
    InMemoryUserBillingRepository,
    InMemoryNotificationRepository,
    FakeGateway,
)


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def repos():
    return SimpleNamespace(
        plans=InMemoryPlanRepository(),
        subscriptions=InMemorySubscriptionRepository(),
        payments=InMemoryPaymentRepository(),
        events=InMemoryWebhookEventRepository(),
        user_billing=InMemoryUserBillingRepository(),
        notifications=InMemoryNotificationRepository(),
    )


@pytest.fixture
def services(repos, gateway):
    """Billing services wired to in-memory repositories and the fake gateway."""
    notifications = NotificationService(repos.notifications)
    plans = PlanRegistryService(repos.plans, repos.subscriptions, gateway)
    subscriptions = SubscriptionService(repos.subscriptions, repos.user_billing, plans, gateway, notifications)
    payments = PaymentService(repos.payments, repos.subscriptions, plans, gateway, notifications)
    webhooks = WebhookService(repos.events, subscriptions, payments, gateway, notifications)
    return SimpleNamespace(
        notifications=notifications,
        plans=plans,
        subscriptions=subscriptions,
        payments=payments,
        webhooks=webhooks,
        usage=UsageLedger(repos.subscriptions),
        entitlements=EntitlementResolver(repos.subscriptions),
    )


def make_plan(**overrides) -> Plan:
    """A linked, active monthly plan; quotas and features may be overridden per key."""
    quotas = default_quotas()
    quotas.update(overrides.pop("quotas", {}))
    features = default_features()
    features.update(overrides.pop("features", {}))
    data = dict(
        name="Starter",
        description="Starter plan",
        plan_type="basic",
        billing_cycle="monthly",
        price=Money(amount=999, currency="INR"),
        quotas=quotas,
        features=features,
        trial=TrialPolicy(enabled=False),
        external_plan_id="plan_ext_starter",
    )
    data.update(overrides)
    return Plan(**data)


@pytest.fixture
def plan_factory(repos):
    async def _create(**overrides) -> Plan:
        plan = make_plan(**overrides)
        await repos.plans.insert(plan)
        return plan
    return _create


@pytest.fixture
def limited_plan(plan_factory):
    """Plan allowing exactly two projects."""
    async def _create():
        return await plan_factory(quotas={"projects": QuotaSpec(max=2)})
    return _create
