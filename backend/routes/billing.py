"""Subscription Routes - user subscriptions, checkout payments, usage and entitlements.

Endpoints:
- POST /api/subscriptions/subscribe - Subscribe to a plan
- GET /api/subscriptions/mine - All of the caller's subscriptions
- GET /api/subscriptions/active - The caller's trialing/active subscription
- POST /api/subscriptions/{subscription_id}/cancel - Cancel (local first, then gateway)
- POST /api/subscriptions/{subscription_id}/pause - Pause at the gateway, then locally
- POST /api/subscriptions/{subscription_id}/resume - Resume at the gateway, then locally
- PATCH /api/subscriptions/{subscription_id}/settings - auto_renew / payment_method only
- POST /api/subscriptions/payment/order - Create a checkout order
- POST /api/subscriptions/payment/verify - Verify checkout signature and record payment
- GET /api/subscriptions/payments - Caller's payment history
- GET /api/subscriptions/payments/{payment_id} - One payment
- GET /api/subscriptions/usage - Usage counters of the live subscription
- GET /api/subscriptions/usage/{resource_type} - One counter with remaining quota
- GET /api/subscriptions/entitlement - Effective features and quotas
"""
from fastapi import APIRouter, Body, Depends, status
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from models import PaymentMethodType, CancellationOutcome
from services.subscription_service import subscription_service
from services.payment_service import payment_service
from services.usage_ledger import usage_ledger
from services.entitlement import entitlement_resolver
from middleware import require_auth, ensure_owner
from utils.errors import NotFoundError, TransientError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class CustomerDetails(BaseModel):
    """Gateway customer details, used the first time a user subscribes."""
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class SubscribeRequest(BaseModel):
    plan_id: str
    payment_method: PaymentMethodType = PaymentMethodType.CARD
    customer: Optional[CustomerDetails] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    feedback: Optional[str] = Field(None, max_length=1000)
    at_cycle_end: bool = False


class OrderRequest(BaseModel):
    plan_id: str
    amount: Optional[float] = Field(None, gt=0)
    currency: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    order_id: str
    payment_id: str
    signature: str
    subscription_id: Optional[str] = None


async def _owned_subscription(subscription_id: str, user: dict):
    subscription = await subscription_service.get_subscription(subscription_id)
    ensure_owner(user, subscription.user_id)
    return subscription


async def _live_subscription(user: dict):
    subscription = await subscription_service.get_active_subscription(user["user_id"])
    if not subscription:
        raise NotFoundError("No active subscription", error_code="NO_ACTIVE_SUBSCRIPTION")
    return subscription


# =============================================================================
# Subscriptions
# =============================================================================

@router.post("/subscribe", status_code=status.HTTP_201_CREATED)
async def subscribe(body: SubscribeRequest, user: dict = Depends(require_auth)):
    customer = body.customer.model_dump() if body.customer else {}
    if not customer.get("email") and user.get("email"):
        customer = {"name": user.get("name"), "email": user["email"], **{k: v for k, v in customer.items() if v}}
    return await subscription_service.subscribe(
        user_id=user["user_id"],
        plan_id=body.plan_id,
        payment_method=body.payment_method.value,
        customer=customer,
    )


@router.get("/mine")
async def my_subscriptions(user: dict = Depends(require_auth)):
    items = await subscription_service.list_user_subscriptions(user["user_id"])
    return {"items": items, "total": len(items)}


@router.get("/active")
async def active_subscription(user: dict = Depends(require_auth)):
    """Returns {"subscription": null} when the user has none."""
    return {"subscription": await subscription_service.get_active_subscription(user["user_id"])}


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    body: Optional[CancelRequest] = None,
    user: dict = Depends(require_auth),
):
    body = body or CancelRequest()
    await _owned_subscription(subscription_id, user)
    result = await subscription_service.cancel(
        subscription_id,
        reason=body.reason,
        feedback=body.feedback,
        cancelled_by=user["user_id"],
        at_cycle_end=body.at_cycle_end,
    )
    if result.outcome == CancellationOutcome.FAILED.value:
        raise TransientError(
            "Could not cancel subscription, nothing was changed",
            error_code="CANCEL_FAILED",
            details={"error": result.error},
        )
    return result


@router.post("/{subscription_id}/pause")
async def pause_subscription(subscription_id: str, user: dict = Depends(require_auth)):
    await _owned_subscription(subscription_id, user)
    return await subscription_service.pause_by_user(subscription_id)


@router.post("/{subscription_id}/resume")
async def resume_subscription(subscription_id: str, user: dict = Depends(require_auth)):
    await _owned_subscription(subscription_id, user)
    return await subscription_service.resume_by_user(subscription_id)


@router.patch("/{subscription_id}/settings")
async def update_settings(
    subscription_id: str,
    body: Dict[str, Any] = Body(...),
    user: dict = Depends(require_auth),
):
    await _owned_subscription(subscription_id, user)
    return await subscription_service.update_settings(subscription_id, body, updated_by=user["user_id"])


# =============================================================================
# Payments
# =============================================================================

@router.post("/payment/order")
async def create_payment_order(body: OrderRequest, user: dict = Depends(require_auth)):
    return await payment_service.create_order(
        user_id=user["user_id"],
        plan_id=body.plan_id,
        amount=body.amount,
        currency=body.currency,
    )


@router.post("/payment/verify")
async def verify_payment(body: VerifyPaymentRequest, user: dict = Depends(require_auth)):
    if body.subscription_id:
        await _owned_subscription(body.subscription_id, user)
    payment = await payment_service.verify_payment(
        user_id=user["user_id"],
        order_id=body.order_id,
        payment_id=body.payment_id,
        signature=body.signature,
        subscription_id=body.subscription_id,
    )
    return {"success": payment.status != "failed", "payment": payment}


@router.get("/payments")
async def list_payments(
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    limit: int = 10,
    user: dict = Depends(require_auth),
):
    return await payment_service.list_user_payments(
        user["user_id"], status=status, start=start, end=end, page=page, limit=limit,
    )


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: str, user: dict = Depends(require_auth)):
    payment = await payment_service.get_payment(payment_id)
    ensure_owner(user, payment.user_id)
    return payment


# =============================================================================
# Usage & entitlements
# =============================================================================

@router.get("/usage")
async def get_usage(user: dict = Depends(require_auth)):
    subscription = await _live_subscription(user)
    return {
        "subscription_id": subscription.subscription_id,
        "usage": await usage_ledger.get_usage(subscription.subscription_id),
    }


@router.get("/usage/{resource_type}")
async def get_resource_usage(resource_type: str, user: dict = Depends(require_auth)):
    subscription = await _live_subscription(user)
    remaining = await usage_ledger.remaining(subscription.subscription_id, resource_type)
    counter = subscription.usage.get(resource_type)
    return {
        "resource_type": resource_type,
        "current": counter.current if counter else 0,
        "limit": counter.limit if counter else 0,
        "remaining": remaining,
    }


@router.get("/entitlement")
async def get_entitlement(user: dict = Depends(require_auth)):
    return await entitlement_resolver.get_entitlement(user["user_id"])
