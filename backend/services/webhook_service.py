"""Webhook Service - gateway event ingestion and reconciliation.

Key Principles:
1. Signature verification: nothing is read or written before the HMAC matches
2. Idempotency: redelivering an event, in any order and any number of times,
   has no additional effect (event-id ledger + compare-and-set transitions +
   insert-or-skip payments)
3. Orphans are acknowledged: events for subscriptions/payments we do not know
   are logged and answered 200 so the gateway stops retrying
4. Only transient failures (persistence, gateway) are surfaced as errors, so
   the gateway retries exactly those

Events Handled:
- subscription.activated / charged / halted / pending / paused / resumed /
  cancelled / completed / updated
- payment.captured / payment.failed
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from pydantic import ValidationError as PydanticValidationError
from models import (
    Subscription,
    SubscriptionStatus,
    PaymentStatus,
    WebhookEventStatus,
    NotificationKind,
    utcnow,
)
from repositories.base import WebhookEventRepository, DuplicateRecordError
from repositories.mongo import MongoWebhookEventRepository
from services.payment_gateway import PaymentGateway, payment_gateway
from services.subscription_service import SubscriptionService, subscription_service
from services.payment_service import PaymentService, payment_service
from services.notification_service import NotificationService, notification_service
from utils.errors import AuthError, ValidationError, NotFoundError, ConflictError, TransientError

logger = logging.getLogger(__name__)


def _parse_event(payload: bytes) -> Optional[Dict[str, Any]]:
    """The decoded event object, or None when the body is not a JSON object."""
    try:
        event = json.loads(payload)
    except ValueError:
        return None
    return event if isinstance(event, dict) else None


def _entity(event: Dict[str, Any], name: str) -> Dict[str, Any]:
    payload = event.get("payload")
    wrapper = payload.get(name) if isinstance(payload, dict) else None
    entity = wrapper.get("entity") if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else {}


def _timestamp(value: Any) -> Optional[datetime]:
    """Gateway timestamps are unix seconds."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _extract_webhook_context(event: Dict[str, Any]) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    return {
        "event_type": event.get("event"),
        "subscription_id": _entity(event, "subscription").get("id"),
        "payment_id": _entity(event, "payment").get("id"),
    }


class WebhookService:

    def __init__(
        self,
        events: Optional[WebhookEventRepository] = None,
        subscriptions: Optional[SubscriptionService] = None,
        payments: Optional[PaymentService] = None,
        gateway: Optional[PaymentGateway] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.events = events or MongoWebhookEventRepository()
        self.subscriptions = subscriptions or subscription_service
        self.payments = payments or payment_service
        self.gateway = gateway or payment_gateway
        self.notifications = notifications or notification_service

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str], event_id: Optional[str] = None) -> Dict[str, Any]:
        """Verify, de-duplicate and route one delivery.

        Returns a result dict for a 200 response, including for signed
        deliveries whose body or entities are malformed (status "rejected").
        Raises AuthError (bad signature) or TransientError (persistence or
        gateway failure the gateway should retry).
        """
        # Step 1: Verify signature
        if not self.gateway.verify_webhook_signature(payload, signature or ""):
            logger.error("WEBHOOK_SIGNATURE_INVALID event_id=%s", event_id)
            raise AuthError("Invalid webhook signature")

        event = _parse_event(payload)
        ctx = _extract_webhook_context(event or {})
        event_type = ctx["event_type"]
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s subscription_id=%s payment_id=%s",
            event_id, event_type, ctx["subscription_id"], ctx["payment_id"],
        )

        # Step 2: Idempotency check
        if event_id and not await self._begin_event(event_id, event_type):
            logger.info("Event %s already processed - skipping", event_id)
            return {"event_id": event_id, "event_type": event_type, "status": "duplicate"}

        # Step 3: Process event
        if event is None:
            logger.warning("WEBHOOK_MALFORMED event_id=%s error=unparseable body", event_id)
            result = {"status": "rejected", "detail": "Invalid webhook payload"}
        else:
            result = await self._dispatch(event_id, event_type, event)

        if event_id:
            await self._finish_event(event_id, {
                "status": WebhookEventStatus.PROCESSED.value,
                "processed_at": utcnow(),
                "outcome": result.get("status"),
                "error": result.get("detail"),
                "related_subscription_id": result.get("subscription_id"),
                "related_payment_id": result.get("payment_id"),
            })
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s outcome=%s subscription_id=%s",
            event_id, event_type, result.get("status"), result.get("subscription_id"),
        )
        return {"event_id": event_id, "event_type": event_type, **result}

    async def _dispatch(self, event_id: Optional[str], event_type: Optional[str], event: Dict[str, Any]) -> Dict[str, Any]:
        """Run the handler. Bad event content is a final "rejected" outcome; anything else is retryable."""
        try:
            return await self._handle_event(event_type, event)
        except ConflictError as e:
            logger.warning(
                "WEBHOOK_TRANSITION_REJECTED event_id=%s event_type=%s error=%s",
                event_id, event_type, e.message,
            )
            return {"status": "rejected", "detail": e.message}
        except (ValidationError, NotFoundError) as e:
            logger.warning("WEBHOOK_UNPROCESSABLE event_id=%s event_type=%s error=%s", event_id, event_type, e.message)
            return {"status": "rejected", "detail": e.message}
        except (ValueError, TypeError, KeyError, PydanticValidationError) as e:
            logger.warning("WEBHOOK_MALFORMED event_id=%s event_type=%s error=%s", event_id, event_type, str(e))
            return {"status": "rejected", "detail": f"Malformed event: {e}"}
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event_id, event_type, str(e),
            )
            if event_id:
                await self._finish_event(event_id, {
                    "status": WebhookEventStatus.FAILED.value,
                    "processed_at": utcnow(),
                    "error": str(e),
                })
            if isinstance(e, TransientError):
                raise
            raise TransientError(f"Webhook processing failed: {e}") from e

    async def _begin_event(self, event_id: str, event_type: Optional[str]) -> bool:
        """Record the event as PROCESSING. False if it was already processed."""
        record = {
            "event_id": event_id,
            "event_type": event_type,
            "status": WebhookEventStatus.PROCESSING.value,
            "received_at": utcnow(),
            "processed_at": None,
            "error": None,
        }
        try:
            existing = await self.events.get(event_id)
            if existing and existing.get("status") == WebhookEventStatus.PROCESSED.value:
                return False
            if existing:
                await self.events.update(event_id, record)
                return True
            await self.events.insert(record)
            return True
        except DuplicateRecordError:
            logger.info("Event %s duplicate insert (race) - skipping", event_id)
            return False
        except Exception as e:
            raise TransientError(f"Could not record webhook event: {e}") from e

    async def _finish_event(self, event_id: str, fields: Dict[str, Any]):
        try:
            await self.events.update(event_id, fields)
        except Exception as e:
            # Event outcome bookkeeping only; state changes are already idempotent
            logger.warning("Failed to update webhook event %s: %s", event_id, e)

    async def _handle_event(self, event_type: Optional[str], event: Dict[str, Any]) -> Dict[str, Any]:
        handlers = {
            "subscription.activated": self._handle_subscription_activated,
            "subscription.charged": self._handle_subscription_charged,
            "subscription.halted": self._handle_subscription_past_due,
            "subscription.pending": self._handle_subscription_past_due,
            "subscription.paused": self._handle_subscription_paused,
            "subscription.resumed": self._handle_subscription_resumed,
            "subscription.cancelled": self._handle_subscription_cancelled,
            "subscription.completed": self._handle_subscription_completed,
            "subscription.updated": self._handle_subscription_updated,
            "payment.captured": self._handle_payment_captured,
            "payment.failed": self._handle_payment_failed,
        }
        handler = handlers.get(event_type)
        if not handler:
            logger.info("WEBHOOK_IGNORED event_type=%s", event_type)
            return {"status": "ignored"}
        return await handler(event)

    # =========================================================================
    # Subscription events
    # =========================================================================

    async def _load_subscription(self, event: Dict[str, Any]) -> Tuple[Optional[Subscription], Dict[str, Any]]:
        entity = _entity(event, "subscription")
        external_id = entity.get("id")
        subscription = await self.subscriptions.get_by_external_id(external_id) if external_id else None
        if not subscription:
            logger.warning(
                "WEBHOOK_ORPHAN event_type=%s external_subscription_id=%s",
                event.get("event"), external_id,
            )
        return subscription, entity

    def _outcome(self, subscription: Subscription, changed: bool, payment_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "status": "processed" if changed else "noop",
            "subscription_id": subscription.subscription_id,
            "subscription_status": subscription.status,
            "payment_id": payment_id,
        }

    def _notify(self, subscription: Subscription, title: str, message: str, kind: str, key: str, priority: str = "medium"):
        self.notifications.dispatch(
            user_id=subscription.user_id,
            title=title,
            message=message,
            kind=kind,
            priority=priority,
            related={"type": "subscription", "id": subscription.subscription_id},
            idempotency_key=f"{key}:{subscription.subscription_id}",
        )

    async def _handle_subscription_activated(self, event):
        subscription, entity = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        period_end = _timestamp(entity.get("current_end"))
        subscription, changed = await self.subscriptions.activate(
            subscription.subscription_id, period_end, "Activated by payment gateway",
        )
        if changed:
            self._notify(
                subscription, "Subscription activated",
                f"Your {subscription.plan_name or 'subscription'} is now active.",
                NotificationKind.SUCCESS.value, f"activated:{entity.get('current_end')}",
            )
        return self._outcome(subscription, changed)

    async def _handle_subscription_charged(self, event):
        subscription, entity = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        period_end = _timestamp(entity.get("current_end"))

        payment_entity = _entity(event, "payment")
        payment_id = None
        payment_changed = True
        if payment_entity.get("id"):
            payment, payment_changed = await self.payments.record_gateway_payment(
                payment_entity,
                user_id=subscription.user_id,
                subscription_id=subscription.subscription_id,
                status=None if payment_entity.get("status") else PaymentStatus.CAPTURED.value,
                description=f"{subscription.plan_name or 'Subscription'} charge",
            )
            payment_id = payment.payment_id

        # Without a period end the renewal is not keyed, so only the first sighting of the payment renews
        if period_end is None and not payment_changed:
            return self._outcome(subscription, False, payment_id)

        if subscription.status == SubscriptionStatus.ACTIVE.value:
            subscription, changed = await self.subscriptions.renew(subscription.subscription_id, period_end)
        else:
            subscription, changed = await self.subscriptions.activate(
                subscription.subscription_id, period_end, "Charge succeeded",
            )
        return self._outcome(subscription, changed or payment_changed, payment_id)

    async def _handle_subscription_past_due(self, event):
        subscription, entity = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        reason = "Payment halted by gateway" if event.get("event") == "subscription.halted" else "Payment pending at gateway"
        subscription, changed = await self.subscriptions.mark_past_due(subscription.subscription_id, reason)
        if changed:
            self._notify(
                subscription, "Payment overdue",
                "We could not collect your subscription payment. Please update your payment method.",
                NotificationKind.WARNING.value, f"past_due:{entity.get('current_end')}", priority="high",
            )
        return self._outcome(subscription, changed)

    async def _handle_subscription_paused(self, event):
        subscription, _ = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        subscription, changed = await self.subscriptions.pause(subscription.subscription_id, "Paused at payment gateway")
        return self._outcome(subscription, changed)

    async def _handle_subscription_resumed(self, event):
        subscription, entity = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        subscription, changed = await self.subscriptions.resume(
            subscription.subscription_id, _timestamp(entity.get("current_end")),
        )
        return self._outcome(subscription, changed)

    async def _handle_subscription_cancelled(self, event):
        subscription, _ = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        subscription, changed = await self.subscriptions.mark_cancelled(
            subscription.subscription_id, "Cancelled at payment gateway",
        )
        if changed:
            self._notify(
                subscription, "Subscription cancelled",
                f"Your {subscription.plan_name or 'subscription'} has been cancelled.",
                NotificationKind.INFO.value, "subscription_cancelled",
            )
        return self._outcome(subscription, changed)

    async def _handle_subscription_completed(self, event):
        subscription, _ = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        subscription, changed = await self.subscriptions.complete(subscription.subscription_id)
        if changed:
            self._notify(
                subscription, "Subscription completed",
                f"Your {subscription.plan_name or 'subscription'} has completed all billing cycles.",
                NotificationKind.INFO.value, "completed",
            )
        return self._outcome(subscription, changed)

    async def _handle_subscription_updated(self, event):
        subscription, entity = await self._load_subscription(event)
        if not subscription:
            return {"status": "orphan"}
        period_end = _timestamp(entity.get("current_end"))
        changed = False
        if period_end and period_end != subscription.next_billing_date:
            subscription = await self.subscriptions.refresh_billing_dates(
                subscription.subscription_id, period_end, "Updated by payment gateway",
            )
            changed = True
        # Any update marks the user's billing status active, whatever the subscription status is
        await self.subscriptions.mirror_user_status(
            subscription.user_id, SubscriptionStatus.ACTIVE.value, subscription.end_date,
        )
        return self._outcome(subscription, changed)

    # =========================================================================
    # Payment events
    # =========================================================================

    async def _resolve_payment_owner(self, entity: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        """(user_id, subscription_id) via subscription, existing payment, then payment notes."""
        external_subscription_id = entity.get("subscription_id")
        if external_subscription_id:
            subscription = await self.subscriptions.get_by_external_id(external_subscription_id)
            if subscription:
                return subscription.user_id, subscription.subscription_id

        existing = await self.payments.get_by_external_id(entity["id"])
        if existing and existing.user_id:
            return existing.user_id, existing.subscription_id

        notes = entity.get("notes")
        if isinstance(notes, dict) and notes.get("user_id"):
            return notes["user_id"], None
        return None, None

    async def _record_payment_event(self, event, status: str):
        entity = _entity(event, "payment")
        if not entity.get("id"):
            raise ValidationError("Payment event without payment entity")
        user_id, subscription_id = await self._resolve_payment_owner(entity)
        if not user_id:
            logger.warning("WEBHOOK_ORPHAN event_type=%s external_payment_id=%s", event.get("event"), entity.get("id"))
            return {"status": "orphan"}
        payment, changed = await self.payments.record_gateway_payment(
            entity, user_id=user_id, subscription_id=subscription_id, status=status,
        )
        return {
            "status": "processed" if changed else "noop",
            "payment_id": payment.payment_id,
            "payment_status": payment.status,
            "subscription_id": subscription_id,
        }

    async def _handle_payment_captured(self, event):
        return await self._record_payment_event(event, PaymentStatus.CAPTURED.value)

    async def _handle_payment_failed(self, event):
        return await self._record_payment_event(event, PaymentStatus.FAILED.value)


webhook_service = WebhookService()
