"""
MongoDB (Motor) implementations of the billing repositories.

Every atomic rule is a single conditional write on one document:
- usage reserve/release: find_one_and_update with a $expr guard / pipeline floor
- status transitions: compare-and-set on the current status
- payments: unique external_payment_id, insert-or-skip
- refunds: claim the amount as pending while it fits the remaining balance,
  then settle or release the claim once the gateway has answered
"""
import logging
import re
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from database import database
from models import (
    Plan,
    Subscription,
    HistoryEntry,
    UsageCounter,
    Payment,
    PaymentStatus,
    PAYMENT_STATUS_SOURCES,
    UserBilling,
    Notification,
    LIVE_STATUSES,
    GatewaySyncStatus,
    UNLIMITED,
    utcnow,
)
from repositories.base import (
    PlanRepository,
    SubscriptionRepository,
    PaymentRepository,
    WebhookEventRepository,
    UserBillingRepository,
    NotificationRepository,
    DuplicateRecordError,
)

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


def _dump(model) -> Dict[str, Any]:
    return model.model_dump()


def _pending_after(amount: float) -> Dict[str, Any]:
    """refund.pending_amount less amount, floored at zero."""
    return {"$max": [0, {"$round": [{"$subtract": [{"$ifNull": ["$refund.pending_amount", 0]}, amount]}, 2]}]}


class MongoPlanRepository(PlanRepository):

    async def insert(self, plan: Plan) -> Plan:
        db = database.get_db()
        try:
            await db.plans.insert_one(_dump(plan))
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e))
        return plan

    async def get(self, plan_id: str) -> Optional[Plan]:
        db = database.get_db()
        doc = await db.plans.find_one({"plan_id": plan_id}, NO_ID)
        return Plan(**doc) if doc else None

    async def get_by_external_id(self, external_plan_id: str) -> Optional[Plan]:
        db = database.get_db()
        doc = await db.plans.find_one({"external_plan_id": external_plan_id}, NO_ID)
        return Plan(**doc) if doc else None

    async def get_by_name(self, name: str) -> Optional[Plan]:
        db = database.get_db()
        doc = await db.plans.find_one({"name": name}, NO_ID)
        return Plan(**doc) if doc else None

    async def update(self, plan_id: str, fields: Dict[str, Any]) -> Optional[Plan]:
        db = database.get_db()
        try:
            doc = await db.plans.find_one_and_update(
                {"plan_id": plan_id},
                {"$set": fields},
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e))
        return Plan(**doc) if doc else None

    async def delete(self, plan_id: str) -> bool:
        db = database.get_db()
        result = await db.plans.delete_one({"plan_id": plan_id})
        return result.deleted_count == 1

    async def list(self, filters: Dict[str, Any], skip: int, limit: int) -> Tuple[List[Plan], int]:
        db = database.get_db()
        query: Dict[str, Any] = {}
        for key in ("plan_type", "billing_cycle", "status"):
            if filters.get(key):
                query[key] = filters[key]
        if filters.get("search"):
            pattern = {"$regex": re.escape(filters["search"]), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]

        total = await db.plans.count_documents(query)
        cursor = db.plans.find(query, NO_ID).sort([("sort_order", 1), ("created_at", 1)]).skip(skip).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [Plan(**d) for d in docs], total

    async def stats(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        pipeline = [
            {"$group": {
                "_id": "$plan_type",
                "count": {"$sum": 1},
                "active": {"$sum": {"$cond": [{"$eq": ["$status", "active"]}, 1, 0]}},
                "avg_price": {"$avg": "$price.amount"},
            }},
            {"$sort": {"_id": 1}},
        ]
        rows = await db.plans.aggregate(pipeline).to_list(length=None)
        return [
            {"plan_type": r["_id"], "count": r["count"], "active": r["active"], "avg_price": round(r["avg_price"] or 0, 2)}
            for r in rows
        ]


class MongoSubscriptionRepository(SubscriptionRepository):

    async def insert(self, subscription: Subscription) -> Subscription:
        db = database.get_db()
        try:
            await db.subscriptions.insert_one(_dump(subscription))
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e))
        return subscription

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        db = database.get_db()
        doc = await db.subscriptions.find_one({"subscription_id": subscription_id}, NO_ID)
        return Subscription(**doc) if doc else None

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        db = database.get_db()
        doc = await db.subscriptions.find_one({"external_subscription_id": external_subscription_id}, NO_ID)
        return Subscription(**doc) if doc else None

    async def get_live_for_user(self, user_id: str) -> Optional[Subscription]:
        db = database.get_db()
        doc = await db.subscriptions.find_one(
            {"user_id": user_id, "status": {"$in": list(LIVE_STATUSES)}},
            NO_ID,
            sort=[("created_at", -1)],
        )
        return Subscription(**doc) if doc else None

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        db = database.get_db()
        docs = await db.subscriptions.find({"user_id": user_id}, NO_ID).sort("created_at", -1).to_list(length=None)
        return [Subscription(**d) for d in docs]

    async def list(self, status: Optional[str], skip: int, limit: int) -> Tuple[List[Subscription], int]:
        db = database.get_db()
        query = {"status": status} if status else {}
        total = await db.subscriptions.count_documents(query)
        docs = await db.subscriptions.find(query, NO_ID).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)
        return [Subscription(**d) for d in docs], total

    async def count_live_for_plan(self, plan_id: str) -> int:
        db = database.get_db()
        return await db.subscriptions.count_documents(
            {"plan_id": plan_id, "status": {"$in": list(LIVE_STATUSES)}}
        )

    async def transition(
        self,
        subscription_id: str,
        from_status: str,
        fields: Dict[str, Any],
        entry: HistoryEntry,
        extra_filter: Optional[Dict[str, Any]] = None,
    ) -> Optional[Subscription]:
        db = database.get_db()
        query = {"subscription_id": subscription_id, "status": from_status}
        if extra_filter:
            query.update(extra_filter)
        try:
            doc = await db.subscriptions.find_one_and_update(
                query,
                {"$set": {**fields, "updated_at": utcnow()}, "$push": {"history": _dump(entry)}},
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e))
        return Subscription(**doc) if doc else None

    async def update_fields(
        self,
        subscription_id: str,
        fields: Dict[str, Any],
        entry: Optional[HistoryEntry] = None,
    ) -> Optional[Subscription]:
        db = database.get_db()
        update: Dict[str, Any] = {"$set": {**fields, "updated_at": utcnow()}}
        if entry is not None:
            update["$push"] = {"history": _dump(entry)}
        doc = await db.subscriptions.find_one_and_update(
            {"subscription_id": subscription_id},
            update,
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Subscription(**doc) if doc else None

    async def reserve_usage(self, subscription_id: str, resource_type: str, amount: float) -> Optional[UsageCounter]:
        db = database.get_db()
        counter = f"usage.{resource_type}"
        doc = await db.subscriptions.find_one_and_update(
            {
                "subscription_id": subscription_id,
                "is_live": True,
                f"{counter}.limit": {"$exists": True},
                "$or": [
                    {f"{counter}.limit": UNLIMITED},
                    {"$expr": {"$lte": [{"$add": [f"${counter}.current", amount]}, f"${counter}.limit"]}},
                ],
            },
            {"$inc": {f"{counter}.current": amount}, "$set": {"updated_at": utcnow()}},
            projection={"_id": 0, counter: 1},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return UsageCounter(**doc["usage"][resource_type])

    async def release_usage(self, subscription_id: str, resource_type: str, amount: float) -> Optional[UsageCounter]:
        db = database.get_db()
        counter = f"usage.{resource_type}"
        doc = await db.subscriptions.find_one_and_update(
            {"subscription_id": subscription_id, counter: {"$exists": True}},
            [{"$set": {
                f"{counter}.current": {"$max": [0, {"$subtract": [f"${counter}.current", amount]}]},
                "updated_at": utcnow(),
            }}],
            projection={"_id": 0, counter: 1},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return UsageCounter(**doc["usage"][resource_type])

    async def list_pending_sync(self, limit: int = 100) -> List[Subscription]:
        db = database.get_db()
        docs = await db.subscriptions.find(
            {"gateway_sync.status": GatewaySyncStatus.PENDING.value}, NO_ID
        ).limit(limit).to_list(length=limit)
        return [Subscription(**d) for d in docs]

    async def list_renewing_before(self, before: datetime) -> List[Subscription]:
        db = database.get_db()
        docs = await db.subscriptions.find(
            {
                "status": {"$in": list(LIVE_STATUSES)},
                "next_billing_date": {"$ne": None, "$lte": before},
            },
            NO_ID,
        ).sort("next_billing_date", 1).to_list(length=None)
        return [Subscription(**d) for d in docs]

    async def stats(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        pipeline = [
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$price.amount"}}},
            {"$sort": {"_id": 1}},
        ]
        rows = await db.subscriptions.aggregate(pipeline).to_list(length=None)
        return [{"status": r["_id"], "count": r["count"], "revenue": round(r["revenue"] or 0, 2)} for r in rows]


class MongoPaymentRepository(PaymentRepository):

    async def insert_if_absent(self, payment: Payment) -> Tuple[Payment, bool]:
        db = database.get_db()
        try:
            await db.payments.insert_one(_dump(payment))
            return payment, True
        except DuplicateKeyError:
            existing = await self.get_by_external_id(payment.external_payment_id)
            if existing is None:
                # Collided on another unique key (receipt number), not on the payment itself
                raise
            logger.info("Payment %s already recorded - skipping insert", payment.external_payment_id)
            return existing, False

    async def get(self, payment_id: str) -> Optional[Payment]:
        db = database.get_db()
        doc = await db.payments.find_one({"payment_id": payment_id}, NO_ID)
        return Payment(**doc) if doc else None

    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        db = database.get_db()
        doc = await db.payments.find_one({"external_payment_id": external_payment_id}, NO_ID)
        return Payment(**doc) if doc else None

    async def advance_status(self, external_payment_id: str, to_status: str, fields: Dict[str, Any]) -> Optional[Payment]:
        db = database.get_db()
        sources = PAYMENT_STATUS_SOURCES.get(to_status, ())
        doc = await db.payments.find_one_and_update(
            {"external_payment_id": external_payment_id, "status": {"$in": list(sources)}},
            {"$set": {**fields, "status": to_status, "updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Payment(**doc) if doc else None

    async def fill_missing(self, payment_id: str, fields: Dict[str, Any]) -> Optional[Payment]:
        db = database.get_db()
        pipeline = [{"$set": {
            key: {"$ifNull": [f"${key}", {"$literal": value}]} for key, value in fields.items()
        }}]
        doc = await db.payments.find_one_and_update(
            {"payment_id": payment_id},
            pipeline,
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Payment(**doc) if doc else None

    async def claim_refund(self, payment_id: str, amount: float) -> Optional[Payment]:
        db = database.get_db()
        committed = {"$add": [{"$ifNull": ["$refund.amount", 0]}, {"$ifNull": ["$refund.pending_amount", 0]}, amount]}
        doc = await db.payments.find_one_and_update(
            {
                "payment_id": payment_id,
                "status": {"$in": [PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value]},
                "$expr": {"$lte": [committed, "$amount"]},
            },
            {"$inc": {"refund.pending_amount": amount}, "$set": {"updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Payment(**doc) if doc else None

    async def release_refund_claim(self, payment_id: str, amount: float) -> Optional[Payment]:
        db = database.get_db()
        doc = await db.payments.find_one_and_update(
            {"payment_id": payment_id},
            [{"$set": {
                "refund.pending_amount": _pending_after(amount),
                "updated_at": utcnow(),
            }}],
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Payment(**doc) if doc else None

    async def apply_refund(self, payment_id: str, amount: float, refund_fields: Dict[str, Any]) -> Optional[Payment]:
        db = database.get_db()
        new_total = {"$round": [{"$add": [{"$ifNull": ["$refund.amount", 0]}, amount]}, 2]}
        stage = {
            "refund.amount": new_total,
            "refund.pending_amount": _pending_after(amount),
            "status": {"$cond": [
                {"$gte": [new_total, "$amount"]},
                PaymentStatus.REFUNDED.value,
                PaymentStatus.PARTIALLY_REFUNDED.value,
            ]},
            "updated_at": utcnow(),
        }
        for key, value in refund_fields.items():
            stage[f"refund.{key}"] = {"$literal": value}
        doc = await db.payments.find_one_and_update(
            {"payment_id": payment_id},
            [{"$set": stage}],
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Payment(**doc) if doc else None

    async def add_note(self, payment_id: str, note: Dict[str, Any]) -> Optional[Payment]:
        db = database.get_db()
        doc = await db.payments.find_one_and_update(
            {"payment_id": payment_id},
            {"$push": {"notes": note}, "$set": {"updated_at": utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        return Payment(**doc) if doc else None

    async def list(self, filters: Dict[str, Any], skip: int, limit: int) -> Tuple[List[Payment], int]:
        db = database.get_db()
        query: Dict[str, Any] = {}
        for key in ("user_id", "subscription_id", "status"):
            if filters.get(key):
                query[key] = filters[key]
        created: Dict[str, Any] = {}
        if filters.get("start"):
            created["$gte"] = filters["start"]
        if filters.get("end"):
            created["$lte"] = filters["end"]
        if created:
            query["created_at"] = created

        total = await db.payments.count_documents(query)
        docs = await db.payments.find(query, NO_ID).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)
        return [Payment(**d) for d in docs], total

    async def stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        db = database.get_db()
        match: Dict[str, Any] = {}
        if start or end:
            match["created_at"] = {}
            if start:
                match["created_at"]["$gte"] = start
            if end:
                match["created_at"]["$lte"] = end
        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "amount": {"$sum": "$amount"},
                "refunded": {"$sum": "$refund.amount"},
            }},
            {"$sort": {"_id": 1}},
        ]
        rows = await db.payments.aggregate(pipeline).to_list(length=None)
        return [
            {"status": r["_id"], "count": r["count"], "amount": round(r["amount"] or 0, 2), "refunded": round(r["refunded"] or 0, 2)}
            for r in rows
        ]


class MongoWebhookEventRepository(WebhookEventRepository):

    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.webhook_events.find_one({"event_id": event_id}, NO_ID)

    async def insert(self, record: Dict[str, Any]) -> None:
        db = database.get_db()
        try:
            await db.webhook_events.insert_one(dict(record))
        except DuplicateKeyError as e:
            raise DuplicateRecordError(str(e))

    async def update(self, event_id: str, fields: Dict[str, Any]) -> None:
        db = database.get_db()
        await db.webhook_events.update_one({"event_id": event_id}, {"$set": fields})


class MongoUserBillingRepository(UserBillingRepository):

    async def get(self, user_id: str) -> Optional[UserBilling]:
        db = database.get_db()
        doc = await db.user_billing.find_one({"user_id": user_id}, NO_ID)
        return UserBilling(**doc) if doc else None

    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> UserBilling:
        db = database.get_db()
        doc = await db.user_billing.find_one_and_update(
            {"user_id": user_id},
            {"$set": {**fields, "updated_at": utcnow()}},
            projection=NO_ID,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return UserBilling(**doc)


class MongoNotificationRepository(NotificationRepository):

    async def insert(self, notification: Notification) -> bool:
        db = database.get_db()
        doc = _dump(notification)
        if doc.get("idempotency_key") is None:
            doc.pop("idempotency_key", None)  # keep the sparse unique index sparse
        try:
            await db.notifications.insert_one(doc)
            return True
        except DuplicateKeyError:
            return False

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        db = database.get_db()
        docs = await db.notifications.find({"user_id": user_id}, NO_ID).sort("created_at", -1).limit(limit).to_list(length=limit)
        return [Notification(**d) for d in docs]
