"""
Motor repositories: the atomic rules are single conditional writes, so the
tests assert the filter/update documents sent to MongoDB.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from pymongo.errors import DuplicateKeyError

from models import HistoryEntry, Payment, Notification, UNLIMITED
from repositories.base import DuplicateRecordError
from repositories.mongo import (
    MongoSubscriptionRepository,
    MongoPaymentRepository,
    MongoWebhookEventRepository,
    MongoNotificationRepository,
)


@pytest.fixture
def db():
    mock_db = MagicMock()
    with patch("repositories.mongo.database") as mock_database:
        mock_database.get_db.return_value = mock_db
        yield mock_db


@pytest.mark.asyncio
async def test_reserve_is_one_conditional_increment(db):
    db.subscriptions.find_one_and_update = AsyncMock(
        return_value={"usage": {"projects": {"current": 2, "limit": 5}}}
    )

    counter = await MongoSubscriptionRepository().reserve_usage("sub-1", "projects", 1)

    assert counter.current == 2
    query, update = db.subscriptions.find_one_and_update.call_args.args
    assert query["subscription_id"] == "sub-1"
    assert query["is_live"] is True
    assert query["usage.projects.limit"] == {"$exists": True}
    assert {"usage.projects.limit": UNLIMITED} in query["$or"]
    assert {"$expr": {"$lte": [{"$add": ["$usage.projects.current", 1]}, "$usage.projects.limit"]}} in query["$or"]
    assert update["$inc"] == {"usage.projects.current": 1}


@pytest.mark.asyncio
async def test_reserve_over_limit_returns_none(db):
    db.subscriptions.find_one_and_update = AsyncMock(return_value=None)

    assert await MongoSubscriptionRepository().reserve_usage("sub-1", "projects", 1) is None


@pytest.mark.asyncio
async def test_release_floors_at_zero_in_a_pipeline(db):
    db.subscriptions.find_one_and_update = AsyncMock(
        return_value={"usage": {"leads": {"current": 0, "limit": 10}}}
    )

    await MongoSubscriptionRepository().release_usage("sub-1", "leads", 3)

    _, update = db.subscriptions.find_one_and_update.call_args.args
    assert isinstance(update, list)
    assert update[0]["$set"]["usage.leads.current"] == {"$max": [0, {"$subtract": ["$usage.leads.current", 3]}]}


@pytest.mark.asyncio
async def test_transition_compares_status_and_pushes_history(db):
    db.subscriptions.find_one_and_update = AsyncMock(return_value=None)

    result = await MongoSubscriptionRepository().transition(
        "sub-1", "active", {"status": "active", "next_billing_date": None},
        HistoryEntry(action="renewed"), extra_filter={"next_billing_date": None},
    )

    assert result is None
    query, update = db.subscriptions.find_one_and_update.call_args.args
    assert query == {"subscription_id": "sub-1", "status": "active", "next_billing_date": None}
    assert update["$push"]["history"]["action"] == "renewed"


@pytest.mark.asyncio
async def test_transition_maps_unique_violation(db):
    db.subscriptions.find_one_and_update = AsyncMock(side_effect=DuplicateKeyError("one_live_subscription_per_user"))

    with pytest.raises(DuplicateRecordError):
        await MongoSubscriptionRepository().transition("sub-1", "cancelled", {"status": "active"}, HistoryEntry(action="x"))


@pytest.mark.asyncio
async def test_payment_insert_is_skipped_when_already_recorded(db):
    existing = Payment(external_payment_id="pay_1", amount=10, user_id="user-1")
    db.payments.insert_one = AsyncMock(side_effect=DuplicateKeyError("external_payment_id"))
    db.payments.find_one = AsyncMock(return_value=existing.model_dump())

    payment, created = await MongoPaymentRepository().insert_if_absent(
        Payment(external_payment_id="pay_1", amount=10)
    )

    assert created is False
    assert payment.payment_id == existing.payment_id


@pytest.mark.asyncio
async def test_refund_claim_guards_remaining_balance(db):
    db.payments.find_one_and_update = AsyncMock(return_value=None)

    assert await MongoPaymentRepository().claim_refund("p-1", 50) is None
    query, update = db.payments.find_one_and_update.call_args.args
    committed = {"$add": [{"$ifNull": ["$refund.amount", 0]}, {"$ifNull": ["$refund.pending_amount", 0]}, 50]}
    assert query["$expr"] == {"$lte": [committed, "$amount"]}
    assert update["$inc"] == {"refund.pending_amount": 50}


@pytest.mark.asyncio
async def test_settled_refund_moves_pending_into_refunded(db):
    db.payments.find_one_and_update = AsyncMock(return_value=None)

    assert await MongoPaymentRepository().apply_refund("p-1", 50, {"reason": "goodwill"}) is None
    query, pipeline = db.payments.find_one_and_update.call_args.args
    stage = pipeline[0]["$set"]
    assert query == {"payment_id": "p-1"}
    assert stage["refund.reason"] == {"$literal": "goodwill"}
    assert stage["refund.pending_amount"]["$max"][0] == 0


@pytest.mark.asyncio
async def test_duplicate_event_insert_is_reported(db):
    db.webhook_events.insert_one = AsyncMock(side_effect=DuplicateKeyError("event_id"))

    with pytest.raises(DuplicateRecordError):
        await MongoWebhookEventRepository().insert({"event_id": "evt_1"})


@pytest.mark.asyncio
async def test_notification_without_key_keeps_index_sparse(db):
    db.notifications.insert_one = AsyncMock()

    assert await MongoNotificationRepository().insert(Notification(user_id="user-1", title="t", message="m"))
    doc = db.notifications.insert_one.call_args.args[0]
    assert "idempotency_key" not in doc
