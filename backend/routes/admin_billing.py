"""Admin Billing & Subscription Management Routes.

Endpoints:
- GET /api/admin/billing/subscriptions - List subscriptions (status filter + pagination)
- GET /api/admin/billing/subscriptions/expiring - Live subscriptions renewing soon
- GET /api/admin/billing/subscriptions/{subscription_id} - Subscription with its payments
- GET /api/admin/billing/stats - Subscription counts and live revenue
- GET /api/admin/billing/payment-stats - Payment counts, revenue and success rate
- POST /api/admin/billing/payments/{payment_id}/refund - Full or partial refund
- POST /api/admin/billing/payments/{payment_id}/notes - Attach an internal note
- POST /api/admin/billing/jobs/{job_name} - Run a scheduled job now

RULES:
1. The gateway is the billing authority. The app is the entitlement authority.
2. No admin action sets a subscription status directly; state changes go
   through the subscription state machine.
"""
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from middleware import require_admin
from services.subscription_service import subscription_service
from services.payment_service import payment_service
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"], dependencies=[Depends(require_admin)])


# =============================================================================
# Request/Response Models
# =============================================================================

class RefundRequest(BaseModel):
    """Refund request. Omitting amount refunds the whole remaining balance."""
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)


class NoteRequest(BaseModel):
    content: str = Field(min_length=1, max_length=500)


# =============================================================================
# Subscriptions
# =============================================================================

@router.get("/subscriptions")
async def list_subscriptions(status: Optional[str] = None, page: int = 1, limit: int = 20):
    return await subscription_service.list_subscriptions(status=status, page=page, limit=limit)


@router.get("/subscriptions/expiring")
async def expiring_subscriptions(days: int = 7):
    items = await subscription_service.get_expiring(days)
    return {"items": items, "total": len(items), "days": days}


@router.get("/subscriptions/{subscription_id}")
async def get_subscription(subscription_id: str):
    subscription = await subscription_service.get_subscription(subscription_id)
    payments = await payment_service.list_subscription_payments(subscription_id)
    return {"subscription": subscription, "payments": payments}


@router.get("/stats")
async def subscription_stats():
    return await subscription_service.get_stats()


# =============================================================================
# Payments
# =============================================================================

@router.get("/payment-stats")
async def payment_stats(start: Optional[datetime] = None, end: Optional[datetime] = None):
    return await payment_service.get_payment_stats(start, end)


@router.post("/payments/{payment_id}/refund")
async def refund_payment(payment_id: str, body: RefundRequest, admin: dict = Depends(require_admin)):
    payment = await payment_service.refund(
        payment_id,
        amount=body.amount,
        reason=body.reason,
        refunded_by=admin.get("user_id"),
    )
    logger.info(f"Refund on payment {payment_id} issued by admin {admin.get('user_id')}")
    return {"success": True, "payment": payment}


@router.post("/payments/{payment_id}/notes")
async def add_payment_note(payment_id: str, body: NoteRequest, admin: dict = Depends(require_admin)):
    return await payment_service.add_note(payment_id, body.content, created_by=admin.get("user_id"))


# =============================================================================
# Jobs
# =============================================================================

@router.post("/jobs/{job_name}")
async def run_job_now(job_name: str, admin: dict = Depends(require_admin)):
    from job_runner import JOB_RUNNERS

    runner = JOB_RUNNERS.get(job_name)
    if not runner:
        raise NotFoundError(f"Unknown job: {job_name}", error_code="JOB_NOT_FOUND")
    logger.info(f"Job {job_name} triggered manually by admin {admin.get('user_id')}")
    return await runner()
