"""Payment Service - orders, checkout verification, recorded charges and refunds.

Payment rows are keyed by the gateway payment id (unique index). The same
payment can reach us through checkout verification, payment.* webhooks and
subscription.charged webhooks in any order and any number of times:
record_gateway_payment inserts it once and afterwards only moves its status
forward (pending -> captured/failed, failed -> captured). Notifications are
sent only for the write that actually changed something.
"""
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Any, Tuple
from models import (
    Payment,
    PaymentStatus,
    PaymentMethodDetail,
    PaymentErrorDetail,
    CardDetail,
    PaymentNote,
    PAYMENT_STATUS_SOURCES,
    NotificationKind,
    utcnow,
)
from repositories.base import PaymentRepository, SubscriptionRepository
from repositories.mongo import MongoPaymentRepository, MongoSubscriptionRepository
from services.payment_gateway import PaymentGateway, GatewayError, payment_gateway, from_minor_units
from services.plan_registry import PlanRegistryService, plan_registry
from services.notification_service import NotificationService, notification_service
from utils.errors import ValidationError, AuthError, NotFoundError, ConflictError, TransientError

logger = logging.getLogger(__name__)

# Gateway payment status -> local status for a newly seen payment
GATEWAY_STATUS_MAP = {
    "captured": PaymentStatus.CAPTURED.value,
    "failed": PaymentStatus.FAILED.value,
    "created": PaymentStatus.PENDING.value,
    "authorized": PaymentStatus.PENDING.value,
}

REFUNDABLE_STATUSES = (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value)


def method_from_gateway(entity: Dict[str, Any]) -> PaymentMethodDetail:
    card = entity.get("card") or None
    return PaymentMethodDetail(
        type=entity.get("method"),
        card=CardDetail(last4=card.get("last4"), network=card.get("network"), type=card.get("type")) if card else None,
        bank=entity.get("bank"),
        wallet=entity.get("wallet"),
        vpa=entity.get("vpa"),
    )


def error_from_gateway(entity: Dict[str, Any]) -> PaymentErrorDetail:
    return PaymentErrorDetail(
        code=entity.get("error_code"),
        description=entity.get("error_description"),
        source=entity.get("error_source"),
        step=entity.get("error_step"),
        reason=entity.get("error_reason"),
    )


class PaymentService:

    def __init__(
        self,
        payments: Optional[PaymentRepository] = None,
        subscriptions: Optional[SubscriptionRepository] = None,
        plans: Optional[PlanRegistryService] = None,
        gateway: Optional[PaymentGateway] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.payments = payments or MongoPaymentRepository()
        self.subscriptions = subscriptions or MongoSubscriptionRepository()
        self.plans = plans or plan_registry
        self.gateway = gateway or payment_gateway
        self.notifications = notifications or notification_service

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_order(
        self,
        user_id: str,
        plan_id: str,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        plan = await self.plans.get_plan(plan_id)
        amount = plan.price.amount if amount is None else amount
        if amount <= 0:
            raise ValidationError("Order amount must be greater than zero", error_code="INVALID_AMOUNT")
        currency = currency or plan.price.currency
        # Gateway receipts are capped at 40 characters
        receipt = f"order_{int(time.time() * 1000)}_{user_id}"[:40]
        try:
            order = await self.gateway.create_order(
                amount=amount,
                currency=currency,
                receipt=receipt,
                notes={"user_id": user_id, "plan_id": plan.plan_id, "plan_name": plan.name},
            )
        except GatewayError as e:
            raise TransientError(f"Could not create payment order: {e}", error_code="GATEWAY_UNAVAILABLE")
        logger.info("ORDER_CREATED order_id=%s user_id=%s plan_id=%s amount=%s", order["id"], user_id, plan.plan_id, amount)
        return {
            "order_id": order["id"],
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "key_id": self.gateway.public_key,
            "plan": {"plan_id": plan.plan_id, "name": plan.name},
        }

    async def verify_payment(
        self,
        user_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
        subscription_id: Optional[str] = None,
    ) -> Payment:
        """Verify a checkout signature and record the payment. Repeated calls return the stored row."""
        if not self.gateway.verify_payment_signature(order_id, payment_id, signature):
            logger.warning("PAYMENT_SIGNATURE_INVALID order_id=%s payment_id=%s user_id=%s", order_id, payment_id, user_id)
            raise AuthError("Payment signature verification failed", error_code="INVALID_PAYMENT_SIGNATURE")

        existing = await self.payments.get_by_external_id(payment_id)
        if existing and existing.status != PaymentStatus.PENDING.value:
            return existing

        try:
            entity = await self.gateway.fetch_payment(payment_id)
        except GatewayError as e:
            raise TransientError(f"Could not fetch payment details: {e}", error_code="GATEWAY_UNAVAILABLE")

        if subscription_id is None:
            live = await self.subscriptions.get_live_for_user(user_id)
            subscription_id = live.subscription_id if live else None

        payment, _ = await self.record_gateway_payment(
            entity,
            user_id=user_id,
            subscription_id=subscription_id,
            order_id=order_id,
            signature=signature,
        )
        return payment

    # =========================================================================
    # Recording
    # =========================================================================

    async def record_gateway_payment(
        self,
        entity: Dict[str, Any],
        user_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        order_id: Optional[str] = None,
        signature: Optional[str] = None,
        status: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tuple[Payment, bool]:
        """Insert-or-advance a gateway payment entity.

        Returns (payment, changed): changed is True only when this call
        inserted the row or moved its status forward.
        """
        now = utcnow()
        status = status or GATEWAY_STATUS_MAP.get(entity.get("status"), PaymentStatus.PENDING.value)
        captured = status == PaymentStatus.CAPTURED.value
        failed = status == PaymentStatus.FAILED.value

        payment = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            external_payment_id=entity["id"],
            external_order_id=order_id or entity.get("order_id"),
            signature=signature,
            amount=from_minor_units(entity.get("amount")),
            currency=entity.get("currency") or "INR",
            status=status,
            method=method_from_gateway(entity),
            description=description or entity.get("description"),
            paid_at=now if captured else None,
            failed_at=now if failed else None,
            error=error_from_gateway(entity) if failed else None,
        )
        stored, created = await self.payments.insert_if_absent(payment)
        if created:
            logger.info(
                "PAYMENT_RECORDED payment_id=%s external_id=%s status=%s amount=%s user_id=%s",
                stored.payment_id, stored.external_payment_id, stored.status, stored.amount, user_id,
            )
            self._notify_payment(stored)
            return stored, True

        links = {"user_id": user_id, "subscription_id": subscription_id, "external_order_id": payment.external_order_id, "signature": signature}
        links = {k: v for k, v in links.items() if v}
        if links and any(getattr(stored, k) is None for k in links):
            stored = await self.payments.fill_missing(stored.payment_id, links) or stored

        if status != stored.status and stored.status in PAYMENT_STATUS_SOURCES.get(status, ()):
            fields: Dict[str, Any] = {"method": payment.method.model_dump()}
            if captured:
                fields["paid_at"] = now
            if failed:
                fields["failed_at"] = now
                fields["error"] = payment.error.model_dump() if payment.error else None
            advanced = await self.payments.advance_status(stored.external_payment_id, status, fields)
            if advanced:
                logger.info(
                    "PAYMENT_STATUS_ADVANCED payment_id=%s external_id=%s status=%s",
                    advanced.payment_id, advanced.external_payment_id, advanced.status,
                )
                self._notify_payment(advanced)
                return advanced, True
        return stored, False

    def _notify_payment(self, payment: Payment):
        if not payment.user_id:
            return
        if payment.status == PaymentStatus.CAPTURED.value:
            self.notifications.dispatch(
                user_id=payment.user_id,
                title="Payment successful",
                message=f"We received your payment of {payment.currency} {payment.amount:.2f}. Receipt {payment.receipt.number}.",
                kind=NotificationKind.SUCCESS.value,
                related={"type": "payment", "id": payment.payment_id},
                idempotency_key=f"payment_captured:{payment.external_payment_id}",
            )
        elif payment.status == PaymentStatus.FAILED.value:
            reason = (payment.error.description if payment.error else None) or "The payment could not be completed"
            self.notifications.dispatch(
                user_id=payment.user_id,
                title="Payment failed",
                message=f"Your payment of {payment.currency} {payment.amount:.2f} failed: {reason}",
                kind=NotificationKind.ERROR.value,
                priority="high",
                related={"type": "payment", "id": payment.payment_id},
                idempotency_key=f"payment_failed:{payment.external_payment_id}",
            )

    # =========================================================================
    # Refunds
    # =========================================================================

    async def refund(
        self,
        payment_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
        refunded_by: Optional[str] = None,
    ) -> Payment:
        """Refund all (amount=None) or part of a captured payment.

        The amount is claimed on the payment row before the gateway is
        called and settled or released once it answers. Concurrent refunds
        never claim more than the paid amount between them.
        """
        payment = await self.get_payment(payment_id)
        if payment.status not in REFUNDABLE_STATUSES:
            raise ConflictError(
                f"Cannot refund a {payment.status} payment",
                error_code="REFUND_NOT_ALLOWED",
                details={"status": payment.status},
            )
        remaining = payment.refundable_amount
        amount = remaining if amount is None else round(amount, 2)
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero", error_code="INVALID_AMOUNT")

        claimed = await self.payments.claim_refund(payment_id, amount)
        if not claimed:
            current = await self.get_payment(payment_id)
            raise ConflictError(
                "Refund amount exceeds the remaining balance",
                error_code="REFUND_EXCEEDS_BALANCE",
                details={"requested": amount, "remaining": max(current.refundable_amount, 0)},
            )

        try:
            remote = await self.gateway.create_refund(
                payment.external_payment_id, amount, notes={"reason": reason or "", "payment_id": payment_id},
            )
        except GatewayError as e:
            await self.payments.release_refund_claim(payment_id, amount)
            raise TransientError(f"Could not create refund: {e}", error_code="GATEWAY_UNAVAILABLE")

        updated = await self.payments.apply_refund(payment_id, amount, {
            "reason": reason,
            "refunded_at": utcnow(),
            "external_refund_id": remote.get("id"),
            "refunded_by": refunded_by,
        })
        if not updated:
            logger.error(
                "REFUND_NOT_RECORDED payment_id=%s external_refund_id=%s amount=%s",
                payment_id, remote.get("id"), amount,
            )
            raise NotFoundError(f"Payment {payment_id} not found", error_code="PAYMENT_NOT_FOUND")

        logger.info("PAYMENT_REFUNDED payment_id=%s amount=%s status=%s", payment_id, amount, updated.status)
        if updated.user_id:
            self.notifications.dispatch(
                user_id=updated.user_id,
                title="Refund processed",
                message=f"A refund of {updated.currency} {amount:.2f} has been issued.",
                kind=NotificationKind.INFO.value,
                related={"type": "payment", "id": payment_id},
                idempotency_key=f"payment_refund:{remote.get('id') or payment_id}",
            )
        return updated

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_payment(self, payment_id: str) -> Payment:
        payment = await self.payments.get(payment_id)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found", error_code="PAYMENT_NOT_FOUND")
        return payment

    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        return await self.payments.get_by_external_id(external_payment_id)

    async def list_user_payments(
        self,
        user_id: str,
        status: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        if page < 1 or limit < 1 or limit > 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        filters = {"user_id": user_id, "status": status, "start": start, "end": end}
        items, total = await self.payments.list(filters, skip=(page - 1) * limit, limit=limit)
        return {"items": items, "page": page, "limit": limit, "total": total}

    async def list_subscription_payments(self, subscription_id: str) -> List[Payment]:
        items, _ = await self.payments.list({"subscription_id": subscription_id}, skip=0, limit=100)
        return items

    async def add_note(self, payment_id: str, content: str, created_by: Optional[str] = None) -> Payment:
        note = PaymentNote(content=content, created_by=created_by)
        updated = await self.payments.add_note(payment_id, note.model_dump())
        if not updated:
            raise NotFoundError(f"Payment {payment_id} not found", error_code="PAYMENT_NOT_FOUND")
        return updated

    async def get_payment_stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        rows = await self.payments.stats(start, end)
        by_status = {r["status"]: r for r in rows}
        paid_statuses = (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value, PaymentStatus.REFUNDED.value)
        paid = sum(by_status[s]["count"] for s in paid_statuses if s in by_status)
        failed = by_status.get(PaymentStatus.FAILED.value, {}).get("count", 0)
        gross = sum(by_status[s]["amount"] for s in paid_statuses if s in by_status)
        refunded = sum(by_status[s]["refunded"] for s in paid_statuses if s in by_status)
        attempts = paid + failed
        return {
            "by_status": rows,
            "total": sum(r["count"] for r in rows),
            "gross_revenue": round(gross, 2),
            "refunded": round(refunded, 2),
            "net_revenue": round(gross - refunded, 2),
            "success_rate": round(paid / attempts * 100, 2) if attempts else 0.0,
        }


payment_service = PaymentService()
