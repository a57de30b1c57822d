import asyncio
import os
from motor.motor_asyncio import AsyncIOMotorClient


async def create_request_indexes(db) -> None:
    await db.user_requests.create_index("id", unique=True, name="user_requests_id_unique")
    await db.user_requests.create_index(
        [("requester.user_id", 1), ("is_deleted", 1), ("created_at", -1)],
        name="user_requests_requester_created_at"
    )
    await db.user_requests.create_index(
        [("status", 1), ("is_fulfilled", 1), ("created_at", -1)],
        name="user_requests_open_listing"
    )
    # Drives the pending reward reconciliation sweep.
    await db.user_requests.create_index(
        [("reward.status", 1), ("reward.created_at", 1)],
        sparse=True,
        name="user_requests_reward_pending"
    )
    await db.paper_requests.create_index("id", unique=True, name="paper_requests_id_unique")
    await db.paper_requests.create_index(
        [("user_request_id", 1), ("created_at", -1)],
        name="paper_requests_user_request_created_at"
    )
    # At most one active fulfillment record per request.
    await db.paper_requests.create_index(
        [("user_request_id", 1)],
        unique=True,
        partialFilterExpression={"is_deleted": False},
        name="paper_requests_one_active"
    )
    await db.notifications.create_index("id", unique=True, name="notifications_id_unique")
    await db.notifications.create_index(
        [("recipient_id", 1), ("is_deleted", 1), ("created_at", -1)],
        name="notifications_recipient_created_at"
    )
    await db.notifications.create_index(
        [("recipient_id", 1), ("is_read", 1), ("is_deleted", 1)],
        name="notifications_recipient_unread"
    )
    await db.notifications.create_index(
        [("is_read", 1), ("created_at", 1)],
        name="notifications_cleanup"
    )


async def apply_request_indexes() -> None:
    mongo_url = os.environ.get("MONGO_URL")
    db_name = os.environ.get("DB_NAME")

    if not mongo_url or not db_name:
        raise EnvironmentError("MONGO_URL and DB_NAME must be set")

    client = AsyncIOMotorClient(mongo_url)
    await create_request_indexes(client[db_name])
    client.close()


def main() -> None:
    asyncio.run(apply_request_indexes())


if __name__ == "__main__":
    main()
