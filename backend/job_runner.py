"""
Shared job runner for scheduled background jobs.
Used by server (scheduler), admin (manual run) and scripts/.
Each run_* returns a dict with "message" and "count" for the admin toast.
"""
import logging
import os

logger = logging.getLogger(__name__)

RENEWAL_REMINDER_DAYS = int(os.getenv("RENEWAL_REMINDER_DAYS", "7"))


async def run_renewal_reminders(days: int = None):
    """Notify users whose live subscription renews within the reminder window.

    One reminder per subscription per billing date (idempotency key), so
    repeated runs on the same day do not notify twice.
    """
    from services.subscription_service import subscription_service
    from services.notification_service import notification_service
    from models import NotificationKind

    days = RENEWAL_REMINDER_DAYS if days is None else days
    try:
        count = 0
        for subscription in await subscription_service.get_expiring(days):
            if not subscription.auto_renew or not subscription.next_billing_date:
                continue
            billing_date = subscription.next_billing_date.date().isoformat()
            sent = await notification_service.send(
                user_id=subscription.user_id,
                title="Subscription renewal",
                message=(
                    f"Your {subscription.plan_name or 'subscription'} renews on {billing_date} "
                    f"for {subscription.price.currency} {subscription.price.amount:.2f}."
                ),
                kind=NotificationKind.INFO.value,
                related={"type": "subscription", "id": subscription.subscription_id},
                idempotency_key=f"renewal_reminder:{subscription.subscription_id}:{billing_date}",
            )
            if sent:
                count += 1
        logger.info(f"Renewal reminders job completed: {count} reminders sent")
        return {"message": f"Renewal reminders sent: {count}", "count": count}
    except Exception as e:
        logger.error(f"Renewal reminders job failed: {e}")
        raise


async def run_pending_cancellation_sync():
    from services.subscription_service import subscription_service

    try:
        count = await subscription_service.sync_pending_cancellations()
        logger.info(f"Pending cancellation sync completed: {count} synced")
        return {"message": f"Gateway cancellations synced: {count}", "count": count}
    except Exception as e:
        logger.error(f"Pending cancellation sync failed: {e}")
        raise


JOB_RUNNERS = {
    "renewal_reminders": run_renewal_reminders,
    "pending_cancellation_sync": run_pending_cancellation_sync,
}
