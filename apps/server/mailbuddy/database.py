from functools import lru_cache

from fastapi import Depends
from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase

from mailbuddy import config


@lru_cache
def get_settings():
    return config.Settings()


async def get_db(settings: config.Settings = Depends(get_settings)) -> AsyncDatabase:
    client = AsyncMongoClient(settings.DB_CONNECTION_STRING)
    db = client[settings.DB_NAME]
    try:
        yield db
    finally:
        await client.close()


async def ensure_indexes(db: AsyncDatabase) -> None:
    """Create the unique keys the sync engine relies on for idempotent writes."""
    await db["message_stubs"].create_index([("account_id", 1), ("message_id", 1)], unique=True)
    await db["emails"].create_index([("account_id", 1), ("message_id", 1)], unique=True)
    await db["emails"].create_index([("account_id", 1), ("internal_date", -1)])
    await db["mail_sync_state"].create_index([("account_id", 1)], unique=True)
    await db["mail_sync_state"].create_index([("last_sync_at", 1)])
