"""Payment gateway webhook endpoint.

Responses:
- 200 processed, duplicate, ignored, orphaned or rejected (no retry wanted)
- 401 signature mismatch
- 503 transient failure (the gateway retries the delivery)
"""
from fastapi import APIRouter, Request, Header
from typing import Optional
from services.webhook_service import webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/razorpay")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    x_razorpay_event_id: Optional[str] = Header(None, alias="X-Razorpay-Event-Id"),
):
    """Handle Razorpay subscription and payment events.

    The raw body is read before any parsing: the signature covers the exact
    bytes the gateway sent. AuthError and TransientError propagate to the
    app-level BillingError handler (401 / 503).
    """
    payload = await request.body()
    result = await webhook_service.process_webhook(
        payload=payload,
        signature=x_razorpay_signature,
        event_id=x_razorpay_event_id,
    )
    return {"received": True, **result}
