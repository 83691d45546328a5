"""Usage Ledger - per-subscription resource counters with atomic quota enforcement.

Callers creating teams, users, projects, clients, leads or uploading files
reserve quota here first and release it when the resource is deleted.
A reservation is one conditional increment in the database, so concurrent
creators can never push `current` past `limit`; a release never takes it
below zero. Only live (trialing or active) subscriptions accept reservations.
Denial is a result (QuotaDecision.allowed == False), not an error.
"""
import logging
from typing import Dict, Any, Optional
from models import QuotaDecision, ResourceType
from repositories.base import SubscriptionRepository
from repositories.mongo import MongoSubscriptionRepository
from utils.errors import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

# Only storage (GB) may be reserved in fractional amounts
FRACTIONAL_RESOURCES = frozenset({ResourceType.STORAGE.value})


def _validate(resource_type: str, amount: float) -> str:
    try:
        resource = ResourceType(resource_type).value
    except ValueError:
        raise ValidationError(f"Unknown resource type: {resource_type}", error_code="UNKNOWN_RESOURCE")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        raise ValidationError("Amount must be a positive number", error_code="INVALID_AMOUNT")
    if resource not in FRACTIONAL_RESOURCES and float(amount) != int(amount):
        raise ValidationError(f"{resource} must be reserved in whole units", error_code="INVALID_AMOUNT")
    return resource


class UsageLedger:

    def __init__(self, subscriptions: Optional[SubscriptionRepository] = None):
        self.subscriptions = subscriptions or MongoSubscriptionRepository()

    async def check_and_reserve(self, subscription_id: str, resource_type: str, amount: float = 1) -> QuotaDecision:
        resource = _validate(resource_type, amount)
        counter = await self.subscriptions.reserve_usage(subscription_id, resource, amount)
        if counter is not None:
            return QuotaDecision(allowed=True, resource_type=resource, current=counter.current, limit=counter.limit)

        subscription = await self.subscriptions.get(subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found", error_code="SUBSCRIPTION_NOT_FOUND")
        usage = subscription.usage.get(resource)
        current = usage.current if usage else 0
        limit = usage.limit if usage else 0
        if not subscription.is_live:
            logger.info("QUOTA_DENIED subscription_id=%s resource=%s status=%s", subscription_id, resource, subscription.status)
            return QuotaDecision(
                allowed=False,
                resource_type=resource,
                current=current,
                limit=limit,
                reason=f"Subscription is {subscription.status}",
            )
        logger.info(
            "QUOTA_DENIED subscription_id=%s resource=%s requested=%s current=%s limit=%s",
            subscription_id, resource, amount, current, limit,
        )
        return QuotaDecision(
            allowed=False,
            resource_type=resource,
            current=current,
            limit=limit,
            reason=f"{resource} limit reached ({current}/{limit})",
        )

    async def release(self, subscription_id: str, resource_type: str, amount: float = 1) -> QuotaDecision:
        resource = _validate(resource_type, amount)
        counter = await self.subscriptions.release_usage(subscription_id, resource, amount)
        if counter is None:
            subscription = await self.subscriptions.get(subscription_id)
            if not subscription:
                raise NotFoundError(f"Subscription {subscription_id} not found", error_code="SUBSCRIPTION_NOT_FOUND")
            return QuotaDecision(allowed=True, resource_type=resource, current=0, limit=0)
        return QuotaDecision(allowed=True, resource_type=resource, current=counter.current, limit=counter.limit)

    async def get_usage(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self.subscriptions.get(subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found", error_code="SUBSCRIPTION_NOT_FOUND")
        return {
            resource: {"current": c.current, "limit": c.limit, "remaining": c.remaining}
            for resource, c in subscription.usage.items()
        }

    async def remaining(self, subscription_id: str, resource_type: str) -> float:
        """Remaining quota for one resource (-1 when unlimited)."""
        resource = _validate(resource_type, 1)
        usage = await self.get_usage(subscription_id)
        return usage.get(resource, {}).get("remaining", 0)

    async def reserve_for_user(self, user_id: str, resource_type: str, amount: float = 1) -> QuotaDecision:
        subscription = await self._live_subscription(user_id)
        return await self.check_and_reserve(subscription.subscription_id, resource_type, amount)

    async def release_for_user(self, user_id: str, resource_type: str, amount: float = 1) -> QuotaDecision:
        subscription = await self._live_subscription(user_id)
        return await self.release(subscription.subscription_id, resource_type, amount)

    async def _live_subscription(self, user_id: str):
        subscription = await self.subscriptions.get_live_for_user(user_id)
        if not subscription:
            raise NotFoundError("No active subscription", error_code="NO_ACTIVE_SUBSCRIPTION")
        return subscription


usage_ledger = UsageLedger()
