"""Plan Registry - CRUD over subscription plan templates.

A plan is a template: price, billing cycle, per-resource quotas, feature
flags and trial policy. Subscriptions copy a plan's quotas and features at
subscribe time (see usage_snapshot / feature_snapshot); editing a plan never
changes what an existing subscriber is entitled to.

Rules:
1. Prices and quota ceilings are never negative
2. external_plan_id (the gateway's plan id) is unique across plans
3. A plan referenced by a trialing or active subscription cannot be deleted
4. Patches are allow-listed (PlanUpdate); unknown fields are rejected
"""
import logging
import math
from typing import Dict, List, Optional, Any, Union
from pydantic import BaseModel, ValidationError as PydanticValidationError
from models import (
    Plan,
    PlanCreate,
    PlanUpdate,
    PlanStatus,
    PlanType,
    BillingCycle,
    ResourceType,
    FeatureFlag,
    UsageCounter,
    default_quotas,
    default_features,
    utcnow,
)
from repositories.base import PlanRepository, SubscriptionRepository, DuplicateRecordError
from repositories.mongo import MongoPlanRepository, MongoSubscriptionRepository
from services.payment_gateway import PaymentGateway, GatewayError, payment_gateway
from utils.errors import ValidationError, NotFoundError, ConflictError, TransientError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


# ============================================================================
# DEFAULT PLANS - seeded on first start
# ============================================================================
DEFAULT_PLANS = [
    {
        "name": "Basic",
        "description": "For freelancers and small studios getting started",
        "plan_type": PlanType.BASIC.value,
        "billing_cycle": BillingCycle.MONTHLY.value,
        "price": {"amount": 999, "currency": "INR"},
        "quotas": {
            "teams": {"max": 1}, "users": {"max": 5}, "projects": {"max": 10},
            "clients": {"max": 50}, "leads": {"max": 100}, "storage": {"max": 5},
        },
        "features": {"aiEstimates": False, "advancedAnalytics": False},
        "trial": {"enabled": True, "days": 14},
        "sort_order": 1,
        "tags": ["starter"],
    },
    {
        "name": "Professional",
        "description": "For growing teams that need analytics and AI estimates",
        "plan_type": PlanType.PROFESSIONAL.value,
        "billing_cycle": BillingCycle.MONTHLY.value,
        "price": {"amount": 2499, "currency": "INR"},
        "quotas": {
            "teams": {"max": 3}, "users": {"max": 20}, "projects": {"max": 50},
            "clients": {"max": 250}, "leads": {"max": 1000}, "storage": {"max": 50},
        },
        "features": {"aiEstimates": True, "advancedAnalytics": True, "customBranding": True},
        "trial": {"enabled": True, "days": 14},
        "popular": True,
        "sort_order": 2,
        "tags": ["teams", "analytics"],
    },
    {
        "name": "Enterprise",
        "description": "Unlimited usage, white label and priority support",
        "plan_type": PlanType.ENTERPRISE.value,
        "billing_cycle": BillingCycle.YEARLY.value,
        "price": {"amount": 79999, "currency": "INR"},
        "quotas": {r.value: {"unlimited": True} for r in ResourceType},
        "features": {f.value: True for f in FeatureFlag},
        "trial": {"enabled": False, "days": 0},
        "yearly_discount": 20,
        "sort_order": 3,
        "tags": ["enterprise", "unlimited"],
    },
]


def usage_snapshot(plan: Plan) -> Dict[str, UsageCounter]:
    """Fresh usage counters for every resource type, limits copied from the plan (-1 = unlimited)."""
    return {r.value: UsageCounter(current=0, limit=plan.limit_for(r.value)) for r in ResourceType}


def feature_snapshot(plan: Plan) -> Dict[str, bool]:
    return {f.value: bool(plan.features.get(f.value, False)) for f in FeatureFlag}


def _parse(model: type, data: Union[BaseModel, Dict[str, Any]]):
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid plan data",
            details={"errors": [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]},
        )


class PlanRegistryService:

    def __init__(
        self,
        plans: Optional[PlanRepository] = None,
        subscriptions: Optional[SubscriptionRepository] = None,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.plans = plans or MongoPlanRepository()
        self.subscriptions = subscriptions or MongoSubscriptionRepository()
        self.gateway = gateway or payment_gateway

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_plan(self, plan_id: str) -> Plan:
        plan = await self.plans.get(plan_id)
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found", error_code="PLAN_NOT_FOUND")
        return plan

    async def get_plan_by_external_id(self, external_plan_id: str) -> Optional[Plan]:
        return await self.plans.get_by_external_id(external_plan_id)

    async def list_plans(
        self,
        plan_type: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        filters = {"plan_type": plan_type, "billing_cycle": billing_cycle, "status": status, "search": search}
        items, total = await self.plans.list(filters, skip=(page - 1) * limit, limit=limit)
        return {
            "items": items,
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    async def search_plans(self, query: str) -> List[Plan]:
        """Active plans whose name, description or tags match the query."""
        result = await self.list_plans(status=PlanStatus.ACTIVE.value, search=query, limit=MAX_PAGE_SIZE)
        return result["items"]

    async def get_plan_stats(self) -> Dict[str, Any]:
        rows = await self.plans.stats()
        return {
            "by_type": rows,
            "total": sum(r["count"] for r in rows),
            "active": sum(r["active"] for r in rows),
        }

    # =========================================================================
    # Writes
    # =========================================================================

    async def create_plan(self, data: Union[PlanCreate, Dict[str, Any]]) -> Plan:
        payload = _parse(PlanCreate, data)
        document = payload.model_dump()
        document["quotas"] = {**default_quotas(), **payload.quotas}
        document["features"] = {**default_features(), **payload.features}

        if payload.external_plan_id:
            if await self.plans.get_by_external_id(payload.external_plan_id):
                raise ValidationError(
                    f"external_plan_id {payload.external_plan_id} is already used by another plan",
                    error_code="DUPLICATE_EXTERNAL_PLAN_ID",
                )
            plan = Plan(**document)
        else:
            plan = await self._link_gateway_plan(Plan(**document))

        try:
            await self.plans.insert(plan)
        except DuplicateRecordError:
            raise ValidationError(
                f"external_plan_id {plan.external_plan_id} is already used by another plan",
                error_code="DUPLICATE_EXTERNAL_PLAN_ID",
            )
        logger.info("PLAN_CREATED plan_id=%s name=%s external_plan_id=%s", plan.plan_id, plan.name, plan.external_plan_id)
        return plan

    async def update_plan(self, plan_id: str, data: Union[PlanUpdate, Dict[str, Any]]) -> Plan:
        patch = _parse(PlanUpdate, data)
        plan = await self.get_plan(plan_id)

        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}
        if not changes:
            return plan

        if "quotas" in changes:
            merged = {k: v.model_dump() for k, v in plan.quotas.items()}
            merged.update(changes["quotas"])
            changes["quotas"] = merged
        if "features" in changes:
            changes["features"] = {**plan.features, **changes["features"]}
        if changes.get("external_plan_id") and changes["external_plan_id"] != plan.external_plan_id:
            other = await self.plans.get_by_external_id(changes["external_plan_id"])
            if other and other.plan_id != plan_id:
                raise ValidationError(
                    f"external_plan_id {changes['external_plan_id']} is already used by another plan",
                    error_code="DUPLICATE_EXTERNAL_PLAN_ID",
                )

        # Validate the merged document before anything is written
        _parse(Plan, {**plan.model_dump(), **changes})

        changes["updated_at"] = utcnow()
        try:
            updated = await self.plans.update(plan_id, changes)
        except DuplicateRecordError:
            raise ValidationError("external_plan_id is already used by another plan", error_code="DUPLICATE_EXTERNAL_PLAN_ID")
        if not updated:
            raise NotFoundError(f"Plan {plan_id} not found", error_code="PLAN_NOT_FOUND")
        logger.info("PLAN_UPDATED plan_id=%s fields=%s", plan_id, sorted(k for k in changes if k != "updated_at"))
        return updated

    async def delete_plan(self, plan_id: str) -> None:
        await self.get_plan(plan_id)
        live = await self.subscriptions.count_live_for_plan(plan_id)
        if live:
            raise ConflictError(
                f"Plan {plan_id} has {live} active or trialing subscription(s)",
                error_code="PLAN_IN_USE",
                details={"live_subscriptions": live},
            )
        if not await self.plans.delete(plan_id):
            raise NotFoundError(f"Plan {plan_id} not found", error_code="PLAN_NOT_FOUND")
        logger.info("PLAN_DELETED plan_id=%s", plan_id)

    async def ensure_gateway_plan(self, plan: Plan) -> Plan:
        """Return the plan with an external_plan_id, creating the gateway plan if it has none."""
        if plan.external_plan_id:
            return plan
        linked = await self._link_gateway_plan(plan)
        updated = await self.plans.update(plan.plan_id, {"external_plan_id": linked.external_plan_id, "updated_at": utcnow()})
        return updated or linked

    async def seed_defaults(self) -> int:
        """Insert the built-in plans that are missing (matched by name). Idempotent."""
        created = 0
        for definition in DEFAULT_PLANS:
            if await self.plans.get_by_name(definition["name"]):
                continue
            payload = PlanCreate.model_validate(definition)
            document = payload.model_dump()
            document["quotas"] = {**default_quotas(), **payload.quotas}
            document["features"] = {**default_features(), **payload.features}
            try:
                await self.plans.insert(Plan(**document))
                created += 1
            except DuplicateRecordError:
                continue
        if created:
            logger.info("Seeded %d default plan(s)", created)
        return created

    async def _link_gateway_plan(self, plan: Plan) -> Plan:
        try:
            remote = await self.gateway.create_plan(
                name=plan.name,
                description=plan.description,
                amount=plan.price.amount,
                currency=plan.price.currency,
                billing_cycle=plan.billing_cycle,
            )
        except GatewayError as e:
            raise TransientError(f"Could not create gateway plan: {e}", error_code="GATEWAY_UNAVAILABLE")
        return plan.model_copy(update={"external_plan_id": remote["id"]})


plan_registry = PlanRegistryService()
