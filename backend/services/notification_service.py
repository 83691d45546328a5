"""Notification Service - in-app notifications for billing events.

Notifications are fire-and-forget: a failure to persist one is logged and
never propagates into the billing operation that triggered it. Delivery
(email/SMS/push) is owned by another service reading the notifications
collection.
"""
import asyncio
import logging
from typing import Optional, Dict, Any, List, Set
from models import Notification, NotificationKind
from repositories.base import NotificationRepository
from repositories.mongo import MongoNotificationRepository

logger = logging.getLogger(__name__)


class NotificationService:

    def __init__(self, repository: Optional[NotificationRepository] = None):
        self.repository = repository or MongoNotificationRepository()
        self._pending: Set[asyncio.Task] = set()

    async def send(
        self,
        user_id: str,
        title: str,
        message: str,
        kind: str = NotificationKind.INFO.value,
        priority: str = "medium",
        related: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """Persist one notification. Returns False if it was a duplicate or could not be stored."""
        try:
            notification = Notification(
                user_id=user_id,
                title=title,
                message=message,
                kind=kind,
                priority=priority,
                related=related or {},
                idempotency_key=idempotency_key,
            )
            created = await self.repository.insert(notification)
            if not created:
                logger.info("NOTIFICATION_DUPLICATE user_id=%s idempotency_key=%s", user_id, idempotency_key)
            return created
        except Exception as e:
            logger.warning("Failed to create notification for user %s (%s): %s", user_id, title, e)
            return False

    def dispatch(self, **kwargs) -> asyncio.Task:
        """Schedule send() without waiting for it."""
        task = asyncio.create_task(self.send(**kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self):
        """Wait for dispatched notifications (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        return await self.repository.list_for_user(user_id, limit=limit)


notification_service = NotificationService()
