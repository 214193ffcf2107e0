#!/usr/bin/env python3
"""
Run the initial full sync for linked accounts that have never completed one.

Accounts with a stored cursor are skipped, since the scheduler keeps them up to
date incrementally.

Usage:
    python -m tools.migrations.migrate_full_sync

To force a full sync of every linked account:
    FORCE_RESYNC=1 python -m tools.migrations.migrate_full_sync

Environment variables required:
    - DB_CONNECTION_STRING
    - DB_NAME
    - GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET
    - ENCRYPTION_KEY
    - FORCE_RESYNC (optional: set to 1 to re-sync accounts that already have a cursor)
"""

import asyncio
import logging
import os
import sys

from pymongo import AsyncMongoClient

from mailbuddy.api.sync.service import MailSyncService
from mailbuddy.config import settings
from mailbuddy.database import ensure_indexes

logger = logging.getLogger(__name__)


async def migrate_accounts(db, force_resync: bool = False) -> dict:
    """Full-sync every linked account without a cursor (or all of them when forced)."""
    sync_service = MailSyncService(db)
    users = await db["users"].find(
        {"google_refresh_token": {"$exists": True, "$ne": None}},
        {"_id": 1, "email": 1}
    ).to_list(length=None)

    if not users:
        logger.warning("No accounts with Gmail tokens found")
        return {"total": 0, "synced": 0, "skipped": 0, "failed": 0}

    logger.info(f"Found {len(users)} linked accounts")
    synced = skipped = failed = 0
    for i, user in enumerate(users, 1):
        account_id = str(user["_id"])
        email = user.get("email", "unknown")

        state = await sync_service.store.get_cursor(account_id)
        if state and state.cursor and not force_resync:
            logger.info(f"[{i}/{len(users)}] {email} already has cursor {state.cursor}, skipping (use FORCE_RESYNC=1 to override)")
            skipped += 1
            continue

        logger.info(f"[{i}/{len(users)}] Running full sync for {email} (ID: {account_id})")
        result = await sync_service.full_sync_account(account_id)
        if result.success:
            synced += 1
            stub_count = await sync_service.store.count_stubs(account_id)
            logger.info(f"{email}: {stub_count} messages known, {result.counts.fetched} fetched, cursor {result.cursor}")
        else:
            failed += 1
            logger.error(f"Failed to sync {email}: {result.status.value} {result.error or ''}")

    return {"total": len(users), "synced": synced, "skipped": skipped, "failed": failed}


async def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s"
    )
    force_resync = os.getenv("FORCE_RESYNC", "0").lower() in ("1", "true", "yes")
    if force_resync:
        logger.info("FORCE_RESYNC enabled - every linked account gets a full sync")

    client = AsyncMongoClient(settings.DB_CONNECTION_STRING)
    try:
        db = client[settings.DB_NAME]
        await ensure_indexes(db)
        summary = await migrate_accounts(db, force_resync=force_resync)
        logger.info(f"Migration completed: {summary}")
    except Exception as e:
        logger.error(f"Migration failed: {e}")
        sys.exit(1)
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main())
