"""Dispatch of side effects that must never fail the state transition that
triggered them.

Each helper hands work to a Celery task and only logs when the broker is
unavailable. Notifications fall back to an inline write so the recipient
still sees them in-app.
"""
import logging
import uuid
from typing import Any, Dict

import notification_service

logger = logging.getLogger(__name__)


async def queue_notification(db, payload: Dict[str, Any]) -> None:
    payload = {**payload, "notification_id": payload.get("notification_id") or str(uuid.uuid4())}
    try:
        from tasks.notifications import deliver_notification

        deliver_notification.delay(payload)
        return
    except Exception as exc:
        logger.warning(
            "notification_enqueue_failed recipient_id=%s type=%s error=%s",
            payload.get("recipient_id"),
            payload.get("type"),
            exc,
        )
    try:
        await notification_service.create_notification(db, **payload)
    except Exception as exc:
        logger.error(
            "notification_inline_write_failed recipient_id=%s type=%s error=%s",
            payload.get("recipient_id"),
            payload.get("type"),
            exc,
        )


def queue_request_fulfilled_email(email_data: Dict[str, Any]) -> None:
    try:
        from tasks.notifications import send_request_fulfilled_email

        send_request_fulfilled_email.delay(email_data)
    except Exception as exc:
        logger.warning("fulfilled_email_enqueue_failed email=%s error=%s", email_data.get("email"), exc)


def queue_reward_retry(request_id: str) -> None:
    try:
        from tasks.rewards import retry_fulfillment_reward

        retry_fulfillment_reward.delay(request_id)
    except Exception as exc:
        # The reconciliation sweep picks the pending reward up later.
        logger.warning("reward_retry_enqueue_failed request_id=%s error=%s", request_id, exc)
