import logging
import os
import random
from typing import Any, Dict

from email_service import send_request_fulfilled_email as send_request_fulfilled_email_now
from notification_service import cleanup_old_notifications as cleanup_old_notifications_now
from notification_service import create_notification, send_push_to_recipient
from task_queue import celery_app
from tasks._async_runner import run_async, run_with_db

logger = logging.getLogger(__name__)

NOTIFICATION_TASK_MAX_RETRIES = int(os.environ.get("NOTIFICATION_TASK_MAX_RETRIES", "3"))
NOTIFICATION_TASK_BACKOFF_BASE_SECONDS = int(os.environ.get("NOTIFICATION_TASK_BACKOFF_BASE_SECONDS", "5"))
NOTIFICATION_TASK_BACKOFF_MAX_SECONDS = int(os.environ.get("NOTIFICATION_TASK_BACKOFF_MAX_SECONDS", "120"))


def _retry_delay(retries: int) -> int:
    return min(
        NOTIFICATION_TASK_BACKOFF_BASE_SECONDS * (2 ** retries) + random.randint(0, 2),
        NOTIFICATION_TASK_BACKOFF_MAX_SECONDS,
    )


@celery_app.task(
    bind=True,
    name="tasks.notifications.deliver_notification",
    max_retries=NOTIFICATION_TASK_MAX_RETRIES,
)
def deliver_notification(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return run_with_db(_deliver_notification, payload)
    except Exception as exc:
        if self.request.retries < self.max_retries:
            delay = _retry_delay(self.request.retries)
            logger.warning(
                "notification_delivery_retrying recipient_id=%s type=%s attempt=%s delay=%ss error=%s",
                payload.get("recipient_id"),
                payload.get("type"),
                self.request.retries + 1,
                delay,
                exc,
            )
            raise self.retry(exc=exc, countdown=delay)
        logger.error(
            "notification_delivery_failed recipient_id=%s type=%s error=%s",
            payload.get("recipient_id"),
            payload.get("type"),
            exc,
        )
        return {"status": "failed"}


async def _deliver_notification(db, payload: Dict[str, Any]) -> Dict[str, Any]:
    notification_id = payload.get("notification_id")
    existing = None
    if notification_id:
        existing = await db.notifications.find_one({"id": notification_id}, {"_id": 0})
    # A retry after a failed push must not store the notification twice.
    notification = existing or await create_notification(db, **payload)

    await send_push_to_recipient(
        db,
        recipient_id=notification["recipient_id"],
        recipient_model=notification["recipient_model"],
        title=notification["title"],
        body=notification["message"],
        data={
            "notification_id": notification["id"],
            "type": notification["type"],
            "entity_id": str((notification.get("related_entity") or {}).get("entity_id") or ""),
        },
    )
    return {"status": "delivered", "notification_id": notification["id"]}


@celery_app.task(
    bind=True,
    name="tasks.notifications.send_request_fulfilled_email",
    max_retries=NOTIFICATION_TASK_MAX_RETRIES,
)
def send_request_fulfilled_email(self, email_data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        sent = run_async(send_request_fulfilled_email_now(**email_data))
    except Exception as exc:
        if self.request.retries < self.max_retries:
            delay = _retry_delay(self.request.retries)
            logger.warning(
                "fulfilled_email_retrying email=%s attempt=%s delay=%ss error=%s",
                email_data.get("email"),
                self.request.retries + 1,
                delay,
                exc,
            )
            raise self.retry(exc=exc, countdown=delay)
        logger.error("fulfilled_email_failed email=%s error=%s", email_data.get("email"), exc)
        return {"status": "failed"}
    return {"status": "sent" if sent else "skipped"}


@celery_app.task(name="tasks.notifications.cleanup_old_notifications")
def cleanup_old_notifications() -> Dict[str, Any]:
    return run_with_db(cleanup_old_notifications_now)
