"""
Billing repositories - persistence-only interfaces.

Services own the lifecycle rules (state machine, quota arithmetic, refund
policy); repositories only store and fetch, and expose the handful of
conditional single-document writes the rules need to stay race-free across
workers. The Motor implementations live in repositories.mongo; tests use
in-memory implementations of the same interfaces.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from models import (
    Plan,
    Subscription,
    HistoryEntry,
    UsageCounter,
    Payment,
    UserBilling,
    Notification,
)


class RepositoryError(Exception):
    """Base exception for persistence operations."""
    pass


class DuplicateRecordError(RepositoryError):
    """A unique index rejected the write."""
    pass


class PlanRepository(ABC):

    @abstractmethod
    async def insert(self, plan: Plan) -> Plan:
        pass

    @abstractmethod
    async def get(self, plan_id: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def get_by_external_id(self, external_plan_id: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def update(self, plan_id: str, fields: Dict[str, Any]) -> Optional[Plan]:
        pass

    @abstractmethod
    async def delete(self, plan_id: str) -> bool:
        pass

    @abstractmethod
    async def list(self, filters: Dict[str, Any], skip: int, limit: int) -> Tuple[List[Plan], int]:
        """Filters: plan_type, billing_cycle, status, search (name/description/tags)."""
        pass

    @abstractmethod
    async def stats(self) -> List[Dict[str, Any]]:
        """One row per plan_type: {plan_type, count, active, avg_price}."""
        pass


class SubscriptionRepository(ABC):

    @abstractmethod
    async def insert(self, subscription: Subscription) -> Subscription:
        """Raises DuplicateRecordError when the user already holds a live subscription."""
        pass

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_live_for_user(self, user_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Subscription]:
        pass

    @abstractmethod
    async def list(self, status: Optional[str], skip: int, limit: int) -> Tuple[List[Subscription], int]:
        pass

    @abstractmethod
    async def count_live_for_plan(self, plan_id: str) -> int:
        pass

    @abstractmethod
    async def transition(
        self,
        subscription_id: str,
        from_status: str,
        fields: Dict[str, Any],
        entry: HistoryEntry,
        extra_filter: Optional[Dict[str, Any]] = None,
    ) -> Optional[Subscription]:
        """Compare-and-set on status: apply fields and append entry only if status == from_status.

        Returns None when the subscription is missing or no longer in from_status.
        """
        pass

    @abstractmethod
    async def update_fields(
        self,
        subscription_id: str,
        fields: Dict[str, Any],
        entry: Optional[HistoryEntry] = None,
    ) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def reserve_usage(self, subscription_id: str, resource_type: str, amount: float) -> Optional[UsageCounter]:
        """Atomically add amount on a live subscription if current + amount <= limit (or limit is unlimited).

        Returns the counter after the increment, or None if nothing was reserved.
        """
        pass

    @abstractmethod
    async def release_usage(self, subscription_id: str, resource_type: str, amount: float) -> Optional[UsageCounter]:
        """Atomically subtract amount, flooring current at 0."""
        pass

    @abstractmethod
    async def list_pending_sync(self, limit: int = 100) -> List[Subscription]:
        pass

    @abstractmethod
    async def list_renewing_before(self, before: datetime) -> List[Subscription]:
        """Live subscriptions whose next_billing_date is on or before the given time."""
        pass

    @abstractmethod
    async def stats(self) -> List[Dict[str, Any]]:
        """One row per status: {status, count, revenue}."""
        pass


class PaymentRepository(ABC):

    @abstractmethod
    async def insert_if_absent(self, payment: Payment) -> Tuple[Payment, bool]:
        """Insert keyed by external_payment_id. Returns (stored payment, created)."""
        pass

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def advance_status(
        self,
        external_payment_id: str,
        to_status: str,
        fields: Dict[str, Any],
    ) -> Optional[Payment]:
        """Move to to_status only from one of its allowed source statuses."""
        pass

    @abstractmethod
    async def fill_missing(self, payment_id: str, fields: Dict[str, Any]) -> Optional[Payment]:
        """Set each field only where it is currently null."""
        pass

    @abstractmethod
    async def claim_refund(self, payment_id: str, amount: float) -> Optional[Payment]:
        """Add amount to refund.pending_amount if refunded + pending + amount stays within the paid amount."""
        pass

    @abstractmethod
    async def release_refund_claim(self, payment_id: str, amount: float) -> Optional[Payment]:
        pass

    @abstractmethod
    async def apply_refund(
        self,
        payment_id: str,
        amount: float,
        refund_fields: Dict[str, Any],
    ) -> Optional[Payment]:
        """Move a claimed amount from pending into refund.amount, deriving the status."""
        pass

    @abstractmethod
    async def add_note(self, payment_id: str, note: Dict[str, Any]) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list(self, filters: Dict[str, Any], skip: int, limit: int) -> Tuple[List[Payment], int]:
        """Filters: user_id, subscription_id, status, start, end (created_at range)."""
        pass

    @abstractmethod
    async def stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """One row per status: {status, count, amount, refunded}."""
        pass


class WebhookEventRepository(ABC):

    @abstractmethod
    async def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def insert(self, record: Dict[str, Any]) -> None:
        """Raises DuplicateRecordError when event_id already exists."""
        pass

    @abstractmethod
    async def update(self, event_id: str, fields: Dict[str, Any]) -> None:
        pass


class UserBillingRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserBilling]:
        pass

    @abstractmethod
    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> UserBilling:
        pass


class NotificationRepository(ABC):

    @abstractmethod
    async def insert(self, notification: Notification) -> bool:
        """Returns False when the idempotency_key was already used."""
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        pass
