"""Subscription Service - lifecycle state machine for user subscriptions.

States: trialing, active, past_due, paused, cancelled, completed.
cancelled and completed are terminal.

Allowed edges (anything else is a ConflictError and mutates nothing):
    trialing -> active | cancelled
    active   -> active (renewal) | past_due | paused | cancelled | completed
    past_due -> active | paused | cancelled
    paused   -> active | cancelled

Every executed transition is a compare-and-set on the current status and
appends exactly one history entry, so concurrent or repeated deliveries of
the same event cannot apply it twice. Moving to the state a subscription is
already in is a no-op (renewal excepted, which is keyed on the billing date).
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Tuple, Union
from pydantic import BaseModel, ValidationError as PydanticValidationError
from models import (
    Subscription,
    SubscriptionStatus,
    SubscriptionSettingsUpdate,
    HistoryEntry,
    TrialPeriod,
    BillingCycle,
    PlanStatus,
    PaymentMethodType,
    GatewaySync,
    GatewaySyncStatus,
    CancellationDetail,
    CancellationOutcome,
    CancellationResult,
    NotificationKind,
    LIVE_STATUSES,
    utcnow,
)
from repositories.base import SubscriptionRepository, UserBillingRepository, DuplicateRecordError
from repositories.mongo import MongoSubscriptionRepository, MongoUserBillingRepository
from services.payment_gateway import PaymentGateway, GatewayError, payment_gateway
from services.plan_registry import PlanRegistryService, plan_registry, usage_snapshot, feature_snapshot
from services.notification_service import NotificationService, notification_service
from utils.errors import ValidationError, NotFoundError, ConflictError, TransientError

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_EDGES: Dict[str, frozenset] = {
    S.TRIALING.value: frozenset({S.ACTIVE.value, S.CANCELLED.value}),
    S.ACTIVE.value: frozenset({S.ACTIVE.value, S.PAST_DUE.value, S.PAUSED.value, S.CANCELLED.value, S.COMPLETED.value}),
    S.PAST_DUE.value: frozenset({S.ACTIVE.value, S.PAUSED.value, S.CANCELLED.value}),
    S.PAUSED.value: frozenset({S.ACTIVE.value, S.CANCELLED.value}),
    S.CANCELLED.value: frozenset(),
    S.COMPLETED.value: frozenset(),
}

CYCLE_LENGTH = {
    BillingCycle.MONTHLY.value: timedelta(days=30),
    BillingCycle.YEARLY.value: timedelta(days=365),
}

# Gateway charge count for a new subscription
TOTAL_CHARGES = {
    BillingCycle.MONTHLY.value: 12,
    BillingCycle.YEARLY.value: 1,
}

MAX_CAS_ATTEMPTS = 3
MAX_SYNC_ATTEMPTS = 5


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_EDGES.get(from_status, frozenset())


def _cycle(billing_cycle: str) -> timedelta:
    return CYCLE_LENGTH.get(billing_cycle, CYCLE_LENGTH[BillingCycle.MONTHLY.value])


class SubscriptionService:

    def __init__(
        self,
        subscriptions: Optional[SubscriptionRepository] = None,
        user_billing: Optional[UserBillingRepository] = None,
        plans: Optional[PlanRegistryService] = None,
        gateway: Optional[PaymentGateway] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.subscriptions = subscriptions or MongoSubscriptionRepository()
        self.user_billing = user_billing or MongoUserBillingRepository()
        self.plans = plans or plan_registry
        self.gateway = gateway or payment_gateway
        self.notifications = notifications or notification_service

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get(subscription_id)
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found", error_code="SUBSCRIPTION_NOT_FOUND")
        return subscription

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        return await self.subscriptions.get_by_external_id(external_subscription_id)

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        """The user's trialing or active subscription, if any."""
        return await self.subscriptions.get_live_for_user(user_id)

    async def list_user_subscriptions(self, user_id: str) -> List[Subscription]:
        return await self.subscriptions.list_for_user(user_id)

    async def list_subscriptions(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        if page < 1 or limit < 1 or limit > 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        items, total = await self.subscriptions.list(status, skip=(page - 1) * limit, limit=limit)
        return {"items": items, "page": page, "limit": limit, "total": total}

    async def get_stats(self) -> Dict[str, Any]:
        rows = await self.subscriptions.stats()
        live_rows = [r for r in rows if r["status"] in LIVE_STATUSES]
        return {
            "by_status": rows,
            "total": sum(r["count"] for r in rows),
            "live": sum(r["count"] for r in live_rows),
            "live_revenue": round(sum(r["revenue"] for r in live_rows), 2),
        }

    async def get_expiring(self, days: int = 7) -> List[Subscription]:
        """Live subscriptions whose next billing date falls within the next `days` days."""
        return await self.subscriptions.list_renewing_before(utcnow() + timedelta(days=days))

    # =========================================================================
    # Subscribe
    # =========================================================================

    async def subscribe(
        self,
        user_id: str,
        plan_id: str,
        payment_method: str = PaymentMethodType.CARD.value,
        customer: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Create a subscription from a plan snapshot.

        The gateway subscription is created first; if the local record cannot
        be stored, the remote one is cancelled on a best-effort basis.
        """
        try:
            payment_method = PaymentMethodType(payment_method).value
        except ValueError:
            raise ValidationError(f"Unsupported payment method: {payment_method}")

        plan = await self.plans.get_plan(plan_id)
        if plan.status != PlanStatus.ACTIVE.value:
            raise ValidationError(f"Plan {plan.name} is not available for new subscriptions", error_code="PLAN_NOT_ACTIVE")
        if await self.subscriptions.get_live_for_user(user_id):
            raise ConflictError("User already has an active subscription", error_code="ALREADY_SUBSCRIBED")

        plan = await self.plans.ensure_gateway_plan(plan)
        customer_id = await self._ensure_customer(user_id, customer)

        now = utcnow()
        trial = None
        start_at = None
        if plan.trial.enabled and plan.trial.days > 0:
            trial_end = now + timedelta(days=plan.trial.days)
            trial = TrialPeriod(start_date=now, end_date=trial_end, used=False)
            status = S.TRIALING.value
            start_at = trial_end
            next_billing = trial_end
        else:
            status = S.ACTIVE.value
            next_billing = now + _cycle(plan.billing_cycle)

        try:
            remote = await self.gateway.create_subscription(
                external_plan_id=plan.external_plan_id,
                customer_id=customer_id,
                total_count=TOTAL_CHARGES.get(plan.billing_cycle, 12),
                start_at=start_at,
                notes={"user_id": user_id, "plan_id": plan.plan_id, "plan_name": plan.name},
            )
        except GatewayError as e:
            raise TransientError(f"Could not create gateway subscription: {e}", error_code="GATEWAY_UNAVAILABLE")

        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            external_subscription_id=remote["id"],
            external_customer_id=customer_id,
            status=status,
            is_live=True,
            billing_cycle=plan.billing_cycle,
            price=plan.price,
            trial=trial,
            start_date=now,
            end_date=next_billing,
            next_billing_date=next_billing,
            payment_method=payment_method,
            usage=usage_snapshot(plan),
            features=feature_snapshot(plan),
            history=[HistoryEntry(
                action="created",
                detail=f"Subscribed to {plan.name}",
                metadata={"status": status, "plan_id": plan.plan_id},
            )],
        )

        try:
            await self.subscriptions.insert(subscription)
        except DuplicateRecordError:
            await self._cancel_orphan_remote(remote["id"], user_id)
            raise ConflictError("User already has an active subscription", error_code="ALREADY_SUBSCRIBED")
        except Exception as e:
            logger.error("Failed to store subscription for user %s: %s", user_id, e)
            await self._cancel_orphan_remote(remote["id"], user_id)
            raise TransientError("Could not save subscription, please retry", error_code="PERSISTENCE_FAILURE")

        logger.info(
            "SUBSCRIPTION_CREATED subscription_id=%s user_id=%s plan_id=%s status=%s external_id=%s",
            subscription.subscription_id, user_id, plan.plan_id, status, remote["id"],
        )
        await self.mirror_user_status(user_id, status, subscription.end_date)
        self.notifications.dispatch(
            user_id=user_id,
            title="Subscription started",
            message=(
                f"Your {plan.name} trial has started and ends in {plan.trial.days} days."
                if status == S.TRIALING.value else f"Your {plan.name} subscription is active."
            ),
            kind=NotificationKind.SUCCESS.value,
            related={"type": "subscription", "id": subscription.subscription_id},
            idempotency_key=f"subscription_created:{subscription.subscription_id}",
        )
        return subscription

    async def _ensure_customer(self, user_id: str, customer: Optional[Dict[str, Any]]) -> Optional[str]:
        billing = await self.user_billing.get(user_id)
        if billing and billing.external_customer_id:
            return billing.external_customer_id
        if not customer or not customer.get("email"):
            return None
        try:
            remote = await self.gateway.create_customer(
                name=customer.get("name") or customer["email"],
                email=customer["email"],
                contact=customer.get("contact"),
                notes={"user_id": user_id},
            )
        except GatewayError as e:
            raise TransientError(f"Could not create gateway customer: {e}", error_code="GATEWAY_UNAVAILABLE")
        await self.user_billing.upsert(user_id, {"external_customer_id": remote["id"]})
        return remote["id"]

    async def _cancel_orphan_remote(self, external_subscription_id: str, user_id: str):
        try:
            await self.gateway.cancel_subscription(external_subscription_id)
            logger.info("Cancelled remote subscription %s after local save failed", external_subscription_id)
        except GatewayError as e:
            logger.error(
                "ORPHAN_REMOTE_SUBSCRIPTION external_id=%s user_id=%s error=%s",
                external_subscription_id, user_id, e,
            )

    # =========================================================================
    # State machine
    # =========================================================================

    async def _transition(
        self,
        subscription: Subscription,
        to_status: str,
        action: str,
        detail: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Subscription, bool]:
        """Apply one edge with compare-and-set. Returns (subscription, changed)."""
        for _ in range(MAX_CAS_ATTEMPTS):
            current = subscription.status
            if current == to_status:
                return subscription, False
            if not can_transition(current, to_status):
                raise ConflictError(
                    f"Cannot move subscription from {current} to {to_status}",
                    error_code="INVALID_TRANSITION",
                    details={"from": current, "to": to_status},
                )
            update = {"status": to_status, "is_live": to_status in LIVE_STATUSES, **(fields or {})}
            entry = HistoryEntry(
                action=action,
                detail=detail,
                metadata={"from": current, "to": to_status, **(metadata or {})},
            )
            try:
                updated = await self.subscriptions.transition(subscription.subscription_id, current, update, entry)
            except DuplicateRecordError:
                raise ConflictError("User already has an active subscription", error_code="ALREADY_SUBSCRIBED")
            if updated:
                logger.info(
                    "SUBSCRIPTION_TRANSITION subscription_id=%s from=%s to=%s action=%s",
                    subscription.subscription_id, current, to_status, action,
                )
                await self.mirror_user_status(updated.user_id, updated.status, updated.end_date)
                return updated, True
            # Lost the race; re-read and re-evaluate against the new status
            subscription = await self.get_subscription(subscription.subscription_id)
        raise ConflictError("Subscription is being modified concurrently, retry", error_code="CONCURRENT_UPDATE")

    def _period_fields(self, period_end: Optional[datetime]) -> Dict[str, Any]:
        if period_end is None:
            return {}
        return {"next_billing_date": period_end, "end_date": period_end}

    async def activate(
        self,
        subscription_id: str,
        period_end: Optional[datetime] = None,
        detail: Optional[str] = None,
    ) -> Tuple[Subscription, bool]:
        """trialing -> active (also recovers past_due and resumes paused)."""
        subscription = await self.get_subscription(subscription_id)
        fields = self._period_fields(period_end)
        action = "activated"
        if subscription.status == S.TRIALING.value and subscription.trial:
            fields["trial"] = {**subscription.trial.model_dump(), "used": True}
        elif subscription.status == S.PAST_DUE.value:
            action = "recovered"
        elif subscription.status == S.PAUSED.value:
            action = "resumed"
            fields["paused_at"] = None
        return await self._transition(subscription, S.ACTIVE.value, action, detail or "Subscription activated", fields)

    async def renew(self, subscription_id: str, period_end: Optional[datetime] = None) -> Tuple[Subscription, bool]:
        """active -> active, extending the billing period.

        Keyed on next_billing_date: a period end that is not later than the
        current one is a no-op, so replays cannot extend twice.
        """
        subscription = await self.get_subscription(subscription_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            if subscription.status != S.ACTIVE.value:
                raise ConflictError(
                    f"Cannot renew a {subscription.status} subscription",
                    error_code="INVALID_TRANSITION",
                    details={"from": subscription.status, "to": S.ACTIVE.value},
                )
            current_end = subscription.next_billing_date
            new_end = period_end or (current_end or utcnow()) + _cycle(subscription.billing_cycle)
            if current_end and new_end <= current_end:
                return subscription, False
            entry = HistoryEntry(
                action="renewed",
                detail="Subscription renewed",
                metadata={"previous_billing_date": current_end, "next_billing_date": new_end},
            )
            updated = await self.subscriptions.transition(
                subscription_id,
                S.ACTIVE.value,
                {"status": S.ACTIVE.value, "is_live": True, "next_billing_date": new_end, "end_date": new_end},
                entry,
                extra_filter={"next_billing_date": current_end},
            )
            if updated:
                logger.info("SUBSCRIPTION_RENEWED subscription_id=%s next_billing_date=%s", subscription_id, new_end)
                await self.mirror_user_status(updated.user_id, updated.status, updated.end_date)
                return updated, True
            subscription = await self.get_subscription(subscription_id)
        raise ConflictError("Subscription is being modified concurrently, retry", error_code="CONCURRENT_UPDATE")

    async def mark_past_due(self, subscription_id: str, reason: Optional[str] = None) -> Tuple[Subscription, bool]:
        subscription = await self.get_subscription(subscription_id)
        return await self._transition(
            subscription, S.PAST_DUE.value, "past_due", reason or "Payment overdue",
        )

    async def recover(self, subscription_id: str, period_end: Optional[datetime] = None) -> Tuple[Subscription, bool]:
        """past_due -> active after a successful retry."""
        subscription = await self.get_subscription(subscription_id)
        if subscription.status not in (S.PAST_DUE.value, S.ACTIVE.value):
            raise ConflictError(
                f"Cannot recover a {subscription.status} subscription",
                error_code="INVALID_TRANSITION",
                details={"from": subscription.status, "to": S.ACTIVE.value},
            )
        return await self._transition(
            subscription, S.ACTIVE.value, "recovered", "Payment recovered", self._period_fields(period_end),
        )

    async def pause(self, subscription_id: str, detail: Optional[str] = None) -> Tuple[Subscription, bool]:
        subscription = await self.get_subscription(subscription_id)
        return await self._transition(
            subscription, S.PAUSED.value, "paused", detail or "Subscription paused", {"paused_at": utcnow()},
        )

    async def resume(self, subscription_id: str, period_end: Optional[datetime] = None) -> Tuple[Subscription, bool]:
        subscription = await self.get_subscription(subscription_id)
        if subscription.status not in (S.PAUSED.value, S.ACTIVE.value):
            raise ConflictError(
                f"Cannot resume a {subscription.status} subscription",
                error_code="INVALID_TRANSITION",
                details={"from": subscription.status, "to": S.ACTIVE.value},
            )
        return await self._transition(
            subscription, S.ACTIVE.value, "resumed", "Subscription resumed",
            {"paused_at": None, **self._period_fields(period_end)},
        )

    async def complete(self, subscription_id: str) -> Tuple[Subscription, bool]:
        subscription = await self.get_subscription(subscription_id)
        return await self._transition(
            subscription, S.COMPLETED.value, "completed", "All billing cycles completed", {"completed_at": utcnow()},
        )

    async def mark_cancelled(
        self,
        subscription_id: str,
        detail: Optional[str] = None,
        cancellation: Optional[CancellationDetail] = None,
    ) -> Tuple[Subscription, bool]:
        """Local cancel only (used when the gateway reports the cancellation)."""
        subscription = await self.get_subscription(subscription_id)
        fields: Dict[str, Any] = {
            "cancelled_at": utcnow(),
            "auto_renew": False,
            "gateway_sync": GatewaySync(status=GatewaySyncStatus.SYNCED, updated_at=utcnow()).model_dump(),
        }
        if cancellation:
            fields["cancellation"] = cancellation.model_dump()
        result = await self._transition(subscription, S.CANCELLED.value, "cancelled", detail or "Subscription cancelled", fields)
        if not result[1] and subscription.gateway_sync.status == GatewaySyncStatus.PENDING.value:
            # Already cancelled locally; the gateway has now confirmed it
            synced = await self.subscriptions.update_fields(subscription_id, {"gateway_sync": fields["gateway_sync"]})
            return synced or subscription, False
        return result

    # =========================================================================
    # User-initiated operations (gateway + local)
    # =========================================================================

    async def cancel(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        feedback: Optional[str] = None,
        cancelled_by: Optional[str] = None,
        at_cycle_end: bool = False,
    ) -> CancellationResult:
        """Cancel locally first, then at the gateway.

        Outcomes:
        - cancelled: both sides agree
        - local_cancelled_remote_pending: local cancel stored, gateway call failed;
          gateway_sync stays pending for sync_pending_cancellations
        - failed: local write failed, gateway not called, nothing changed
        """
        subscription = await self.get_subscription(subscription_id)
        if subscription.status == S.CANCELLED.value and subscription.gateway_sync.status != GatewaySyncStatus.PENDING.value:
            return CancellationResult(outcome=CancellationOutcome.CANCELLED, subscription=subscription)
        if not can_transition(subscription.status, S.CANCELLED.value) and subscription.status != S.CANCELLED.value:
            raise ConflictError(
                f"Cannot cancel a {subscription.status} subscription",
                error_code="INVALID_TRANSITION",
                details={"from": subscription.status, "to": S.CANCELLED.value},
            )

        now = utcnow()
        pending = GatewaySync(
            status=GatewaySyncStatus.PENDING, operation="cancel", attempts=0, updated_at=now,
        )
        try:
            subscription, _ = await self._transition(
                subscription,
                S.CANCELLED.value,
                "cancelled",
                reason or "Cancelled by user",
                {
                    "cancelled_at": now,
                    "auto_renew": False,
                    "cancellation": CancellationDetail(reason=reason, feedback=feedback, cancelled_by=cancelled_by).model_dump(),
                    "gateway_sync": pending.model_dump(),
                },
                metadata={"cancelled_by": cancelled_by},
            )
        except ConflictError:
            raise
        except Exception as e:
            logger.error("CANCEL_LOCAL_FAILED subscription_id=%s error=%s", subscription_id, e)
            return CancellationResult(outcome=CancellationOutcome.FAILED, subscription=subscription, error=str(e))

        if subscription.external_subscription_id:
            try:
                await self.gateway.cancel_subscription(subscription.external_subscription_id, at_cycle_end=at_cycle_end)
            except GatewayError as e:
                logger.warning(
                    "CANCEL_REMOTE_PENDING subscription_id=%s external_id=%s error=%s",
                    subscription_id, subscription.external_subscription_id, e,
                )
                flagged = pending.model_copy(update={"error": str(e), "attempts": 1, "updated_at": utcnow()})
                subscription = await self.subscriptions.update_fields(
                    subscription_id, {"gateway_sync": flagged.model_dump()}
                ) or subscription
                self._notify_cancelled(subscription)
                return CancellationResult(
                    outcome=CancellationOutcome.LOCAL_CANCELLED_REMOTE_PENDING,
                    subscription=subscription,
                    error=str(e),
                )

        synced = GatewaySync(status=GatewaySyncStatus.SYNCED, operation="cancel", attempts=1, updated_at=utcnow())
        subscription = await self.subscriptions.update_fields(
            subscription_id, {"gateway_sync": synced.model_dump()}
        ) or subscription
        self._notify_cancelled(subscription)
        return CancellationResult(outcome=CancellationOutcome.CANCELLED, subscription=subscription)

    def _notify_cancelled(self, subscription: Subscription):
        self.notifications.dispatch(
            user_id=subscription.user_id,
            title="Subscription cancelled",
            message=f"Your {subscription.plan_name or 'subscription'} has been cancelled.",
            kind=NotificationKind.INFO.value,
            related={"type": "subscription", "id": subscription.subscription_id},
            idempotency_key=f"subscription_cancelled:{subscription.subscription_id}",
        )

    async def pause_by_user(self, subscription_id: str) -> Subscription:
        """Pause at the gateway, then locally."""
        subscription = await self.get_subscription(subscription_id)
        if subscription.status == S.PAUSED.value:
            return subscription
        if not can_transition(subscription.status, S.PAUSED.value):
            raise ConflictError(
                f"Cannot pause a {subscription.status} subscription",
                error_code="INVALID_TRANSITION",
                details={"from": subscription.status, "to": S.PAUSED.value},
            )
        if subscription.external_subscription_id:
            try:
                await self.gateway.pause_subscription(subscription.external_subscription_id)
            except GatewayError as e:
                raise TransientError(f"Could not pause subscription at the gateway: {e}", error_code="GATEWAY_UNAVAILABLE")
        subscription, _ = await self.pause(subscription_id, "Paused by user")
        return subscription

    async def resume_by_user(self, subscription_id: str) -> Subscription:
        """Resume at the gateway, then locally."""
        subscription = await self.get_subscription(subscription_id)
        if subscription.status == S.ACTIVE.value:
            return subscription
        if subscription.status != S.PAUSED.value:
            raise ConflictError(
                f"Cannot resume a {subscription.status} subscription",
                error_code="INVALID_TRANSITION",
                details={"from": subscription.status, "to": S.ACTIVE.value},
            )
        live = await self.subscriptions.get_live_for_user(subscription.user_id)
        if live and live.subscription_id != subscription_id:
            raise ConflictError("User already has an active subscription", error_code="ALREADY_SUBSCRIBED")
        if subscription.external_subscription_id:
            try:
                await self.gateway.resume_subscription(subscription.external_subscription_id)
            except GatewayError as e:
                raise TransientError(f"Could not resume subscription at the gateway: {e}", error_code="GATEWAY_UNAVAILABLE")
        subscription, _ = await self.resume(subscription_id)
        return subscription

    async def update_settings(
        self,
        subscription_id: str,
        patch: Union[SubscriptionSettingsUpdate, Dict[str, Any]],
        updated_by: Optional[str] = None,
    ) -> Subscription:
        """Patch auto_renew / payment_method. Any other field is rejected."""
        if isinstance(patch, BaseModel) and not isinstance(patch, SubscriptionSettingsUpdate):
            patch = patch.model_dump(exclude_unset=True)
        if not isinstance(patch, SubscriptionSettingsUpdate):
            try:
                patch = SubscriptionSettingsUpdate.model_validate(patch)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid subscription settings",
                    error_code="PROTECTED_FIELDS",
                    details={"errors": [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]},
                )
        subscription = await self.get_subscription(subscription_id)
        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}
        if not changes:
            return subscription
        entry = HistoryEntry(action="settings_updated", detail="Subscription settings updated", metadata={**changes, "updated_by": updated_by})
        updated = await self.subscriptions.update_fields(subscription_id, changes, entry)
        if not updated:
            raise NotFoundError(f"Subscription {subscription_id} not found", error_code="SUBSCRIPTION_NOT_FOUND")
        return updated

    async def refresh_billing_dates(
        self,
        subscription_id: str,
        period_end: Optional[datetime],
        detail: str = "Subscription updated",
    ) -> Subscription:
        fields = self._period_fields(period_end)
        entry = HistoryEntry(action="updated", detail=detail, metadata={k: v for k, v in fields.items()})
        updated = await self.subscriptions.update_fields(subscription_id, fields, entry)
        if not updated:
            raise NotFoundError(f"Subscription {subscription_id} not found", error_code="SUBSCRIPTION_NOT_FOUND")
        return updated

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def sync_pending_cancellations(self, limit: int = 100) -> int:
        """Retry gateway cancellation for subscriptions cancelled locally only."""
        synced = 0
        for subscription in await self.subscriptions.list_pending_sync(limit=limit):
            if subscription.gateway_sync.operation != "cancel" or not subscription.external_subscription_id:
                continue
            attempts = subscription.gateway_sync.attempts + 1
            try:
                await self.gateway.cancel_subscription(subscription.external_subscription_id)
            except GatewayError as e:
                status = GatewaySyncStatus.FAILED if attempts >= MAX_SYNC_ATTEMPTS else GatewaySyncStatus.PENDING
                await self.subscriptions.update_fields(subscription.subscription_id, {
                    "gateway_sync": GatewaySync(
                        status=status, operation="cancel", error=str(e), attempts=attempts, updated_at=utcnow(),
                    ).model_dump(),
                })
                logger.warning(
                    "CANCEL_SYNC_RETRY_FAILED subscription_id=%s attempts=%d status=%s error=%s",
                    subscription.subscription_id, attempts, status.value, e,
                )
                continue
            await self.subscriptions.update_fields(subscription.subscription_id, {
                "gateway_sync": GatewaySync(
                    status=GatewaySyncStatus.SYNCED, operation="cancel", attempts=attempts, updated_at=utcnow(),
                ).model_dump(),
            })
            synced += 1
            logger.info("CANCEL_SYNCED subscription_id=%s attempts=%d", subscription.subscription_id, attempts)
        return synced

    async def mirror_user_status(self, user_id: str, status: str, expiry: Optional[datetime]):
        """Best-effort copy of the latest subscription status onto the user billing record."""
        try:
            await self.user_billing.upsert(user_id, {"subscription_status": status, "subscription_expiry": expiry})
        except Exception as e:
            logger.warning("Failed to mirror subscription status for user %s: %s", user_id, e)


subscription_service = SubscriptionService()
