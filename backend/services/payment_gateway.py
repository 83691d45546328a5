"""
Payment Gateway Adapter - narrow interface over the remote payment service.

The billing core only talks to PaymentGateway. RazorpayGateway implements it
with the razorpay SDK; the SDK is synchronous, so remote calls run in the
default thread pool. Every remote failure surfaces as GatewayError, never as
an SDK- or transport-specific exception.

Amounts cross this boundary in major units (rupees) and are converted to
minor units (paise) on the wire.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, Callable

import razorpay

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Remote payment gateway call failed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def from_minor_units(amount: Optional[int]) -> float:
    return round((amount or 0) / 100, 2)


class PaymentGateway(ABC):

    @abstractmethod
    async def create_customer(self, name: str, email: str, contact: Optional[str] = None, notes: Optional[Dict] = None) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create_order(self, amount: float, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create_plan(self, name: str, description: str, amount: float, currency: str, billing_cycle: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create_subscription(
        self,
        external_plan_id: str,
        customer_id: Optional[str],
        total_count: int,
        start_at: Optional[datetime] = None,
        notes: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def cancel_subscription(self, external_subscription_id: str, at_cycle_end: bool = False) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def pause_subscription(self, external_subscription_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def resume_subscription(self, external_subscription_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def capture_payment(self, external_payment_id: str, amount: float, currency: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create_refund(self, external_payment_id: str, amount: float, notes: Optional[Dict] = None) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_payment(self, external_payment_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        pass

    @property
    def public_key(self) -> str:
        return ""


class RazorpayGateway(PaymentGateway):
    """Razorpay implementation. Credentials come from env unless given explicitly."""

    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None, webhook_secret: Optional[str] = None):
        self._key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client = None

    @property
    def public_key(self) -> str:
        return self._key_id or os.getenv("RAZORPAY_KEY_ID", "")

    def _secret(self) -> str:
        return self._key_secret or os.getenv("RAZORPAY_KEY_SECRET", "")

    def _webhook_secret_value(self) -> str:
        return (self._webhook_secret or os.getenv("RAZORPAY_WEBHOOK_SECRET", "")).strip()

    def _get_client(self) -> razorpay.Client:
        if self._client is None:
            self._client = razorpay.Client(auth=(self.public_key, self._secret()))
        return self._client

    async def _call(self, operation: str, fn: Callable[[razorpay.Client], Dict[str, Any]]) -> Dict[str, Any]:
        if not self.public_key or not self._secret():
            raise GatewayError("Razorpay credentials not configured", operation=operation)
        client = self._get_client()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: fn(client))
        except Exception as e:
            logger.error("Razorpay %s failed: %s", operation, e)
            raise GatewayError(f"Razorpay {operation} failed: {e}", operation=operation) from e

    async def create_customer(self, name, email, contact=None, notes=None):
        data = {"name": name, "email": email, "fail_existing": "0", "notes": notes or {}}
        if contact:
            data["contact"] = contact
        return await self._call("create_customer", lambda c: c.customer.create(data))

    async def create_order(self, amount, currency, receipt, notes=None):
        data = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "payment_capture": 1,
        }
        return await self._call("create_order", lambda c: c.order.create(data))

    async def create_plan(self, name, description, amount, currency, billing_cycle):
        data = {
            "period": billing_cycle,
            "interval": 1,
            "item": {
                "name": name,
                "amount": to_minor_units(amount),
                "currency": currency,
                "description": description,
            },
        }
        return await self._call("create_plan", lambda c: c.plan.create(data))

    async def create_subscription(self, external_plan_id, customer_id, total_count, start_at=None, notes=None):
        data = {
            "plan_id": external_plan_id,
            "total_count": total_count,
            "quantity": 1,
            "customer_notify": 1,
            "notes": notes or {},
        }
        if customer_id:
            data["customer_id"] = customer_id
        if start_at is not None:
            data["start_at"] = int(start_at.timestamp())
        return await self._call("create_subscription", lambda c: c.subscription.create(data))

    async def cancel_subscription(self, external_subscription_id, at_cycle_end=False):
        data = {"cancel_at_cycle_end": 1 if at_cycle_end else 0}
        return await self._call(
            "cancel_subscription", lambda c: c.subscription.cancel(external_subscription_id, data)
        )

    async def pause_subscription(self, external_subscription_id):
        return await self._call(
            "pause_subscription", lambda c: c.subscription.pause(external_subscription_id, {"pause_at": "now"})
        )

    async def resume_subscription(self, external_subscription_id):
        return await self._call(
            "resume_subscription", lambda c: c.subscription.resume(external_subscription_id, {"resume_at": "now"})
        )

    async def capture_payment(self, external_payment_id, amount, currency):
        return await self._call(
            "capture_payment",
            lambda c: c.payment.capture(external_payment_id, to_minor_units(amount), {"currency": currency}),
        )

    async def create_refund(self, external_payment_id, amount, notes=None):
        data = {"amount": to_minor_units(amount), "notes": notes or {}}
        return await self._call("create_refund", lambda c: c.payment.refund(external_payment_id, data))

    async def fetch_payment(self, external_payment_id):
        return await self._call("fetch_payment", lambda c: c.payment.fetch(external_payment_id))

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """HMAC-SHA256 of "order_id|payment_id" with the key secret."""
        if not self._secret() or not signature:
            return False
        try:
            self._get_client().utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
            return True
        except razorpay.errors.SignatureVerificationError:
            return False

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        """HMAC-SHA256 of the raw request body with the webhook secret."""
        secret = self._webhook_secret_value()
        if not secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET is not set - rejecting webhook")
            return False
        if not signature:
            return False
        try:
            body = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
            self._get_client().utility.verify_webhook_signature(body, signature, secret)
            return True
        except (razorpay.errors.SignatureVerificationError, UnicodeDecodeError):
            return False


payment_gateway = RazorpayGateway()
