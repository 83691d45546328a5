"""Entitlement Resolver - effective features and quotas for a user.

Rules:
1. A trialing or active subscription that has not passed its end_date grants
   exactly the features/quotas snapshotted onto it at subscribe time
2. Anything else (no subscription, past_due, paused, cancelled, completed,
   expired) resolves to the free tier
3. The free tier is a constant; resolution never consults the plan registry
"""
import logging
from typing import Optional
from models import Entitlement, FeatureFlag, ResourceType, utcnow
from repositories.base import SubscriptionRepository
from repositories.mongo import MongoSubscriptionRepository

logger = logging.getLogger(__name__)


FREE_TIER = {
    "features": {f.value: False for f in FeatureFlag},
    "quotas": {
        ResourceType.TEAMS.value: 1,
        ResourceType.USERS.value: 1,
        ResourceType.PROJECTS.value: 3,
        ResourceType.CLIENTS.value: 10,
        ResourceType.LEADS.value: 25,
        ResourceType.STORAGE.value: 1,
    },
}


def free_tier_entitlement(user_id: str) -> Entitlement:
    return Entitlement(
        user_id=user_id,
        source="free_tier",
        features=dict(FREE_TIER["features"]),
        quotas=dict(FREE_TIER["quotas"]),
    )


class EntitlementResolver:

    def __init__(self, subscriptions: Optional[SubscriptionRepository] = None):
        self.subscriptions = subscriptions or MongoSubscriptionRepository()

    async def get_entitlement(self, user_id: str) -> Entitlement:
        subscription = await self.subscriptions.get_live_for_user(user_id)
        if not subscription or subscription.is_expired(utcnow()):
            return free_tier_entitlement(user_id)
        return Entitlement(
            user_id=user_id,
            source="subscription",
            subscription_id=subscription.subscription_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            features=dict(subscription.features),
            quotas={resource: counter.limit for resource, counter in subscription.usage.items()},
        )

    async def has_feature(self, user_id: str, feature: str) -> bool:
        entitlement = await self.get_entitlement(user_id)
        return bool(entitlement.features.get(feature, False))

    async def quota_for(self, user_id: str, resource_type: str) -> float:
        """Ceiling for one resource (-1 when unlimited, 0 when not granted)."""
        entitlement = await self.get_entitlement(user_id)
        return entitlement.quotas.get(resource_type, 0)


entitlement_resolver = EntitlementResolver()
