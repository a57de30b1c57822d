import logging
import os
import random
from typing import Any, Dict

from task_queue import celery_app
from tasks._async_runner import run_with_db
from user_request_service import apply_pending_reward
from user_request_service import reconcile_pending_rewards as reconcile_pending_rewards_now

logger = logging.getLogger(__name__)

REWARD_RETRY_MAX_RETRIES = int(os.environ.get("REWARD_RETRY_MAX_RETRIES", "5"))
REWARD_RETRY_BACKOFF_BASE_SECONDS = int(os.environ.get("REWARD_RETRY_BACKOFF_BASE_SECONDS", "10"))
REWARD_RETRY_BACKOFF_MAX_SECONDS = int(os.environ.get("REWARD_RETRY_BACKOFF_MAX_SECONDS", "600"))
REWARD_RECONCILE_GRACE_SECONDS = int(os.environ.get("REWARD_RECONCILE_GRACE_SECONDS", "300"))
REWARD_RECONCILE_BATCH_SIZE = int(os.environ.get("REWARD_RECONCILE_BATCH_SIZE", "200"))


@celery_app.task(
    bind=True,
    name="tasks.rewards.retry_fulfillment_reward",
    max_retries=REWARD_RETRY_MAX_RETRIES,
)
def retry_fulfillment_reward(self, request_id: str) -> Dict[str, Any]:
    try:
        outcome = run_with_db(apply_pending_reward, request_id)
    except Exception as exc:
        if self.request.retries < self.max_retries:
            delay = min(
                REWARD_RETRY_BACKOFF_BASE_SECONDS * (2 ** self.request.retries) + random.randint(0, 2),
                REWARD_RETRY_BACKOFF_MAX_SECONDS,
            )
            logger.warning(
                "fulfillment_reward_retrying request_id=%s attempt=%s delay=%ss error=%s",
                request_id,
                self.request.retries + 1,
                delay,
                exc,
            )
            raise self.retry(exc=exc, countdown=delay)
        # Left pending for reconcile_pending_rewards.
        logger.error("fulfillment_reward_retries_exhausted request_id=%s error=%s", request_id, exc)
        return {"request_id": request_id, "status": "pending"}
    logger.info("fulfillment_reward_retry_done request_id=%s outcome=%s", request_id, outcome)
    return {"request_id": request_id, "status": outcome}


@celery_app.task(name="tasks.rewards.reconcile_pending_rewards")
def reconcile_pending_rewards() -> Dict[str, int]:
    return run_with_db(
        reconcile_pending_rewards_now,
        grace_seconds=REWARD_RECONCILE_GRACE_SECONDS,
        batch_size=REWARD_RECONCILE_BATCH_SIZE,
    )
