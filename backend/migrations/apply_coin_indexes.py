import asyncio
import os
from motor.motor_asyncio import AsyncIOMotorClient


async def create_coin_indexes(db) -> None:
    await db.coins.create_index(
        [("user_id", 1), ("user_model", 1)],
        unique=True,
        name="coins_user_unique"
    )
    await db.coins.create_index(
        [("coins", 1)],
        name="coins_balance"
    )
    await db.coin_transactions.create_index(
        "id",
        unique=True,
        name="coin_transactions_id_unique"
    )
    await db.coin_transactions.create_index(
        [("user_id", 1), ("created_at", -1)],
        name="coin_transactions_user_created_at"
    )
    # One ledger entry per idempotent credit or charge reference.
    await db.coin_transactions.create_index(
        [("reference", 1)],
        unique=True,
        partialFilterExpression={"reference": {"$type": "string"}},
        name="coin_transactions_reference_unique"
    )


async def apply_coin_indexes() -> None:
    mongo_url = os.environ.get("MONGO_URL")
    db_name = os.environ.get("DB_NAME")

    if not mongo_url or not db_name:
        raise EnvironmentError("MONGO_URL and DB_NAME must be set")

    client = AsyncIOMotorClient(mongo_url)
    await create_coin_indexes(client[db_name])
    client.close()


def main() -> None:
    asyncio.run(apply_coin_indexes())


if __name__ == "__main__":
    main()
