from fastapi import Depends
from pymongo.asynchronous.database import AsyncDatabase

from mailbuddy.api.sync.service import MailSyncService
from mailbuddy.database import get_db


async def get_sync_service(db: AsyncDatabase = Depends(get_db)) -> MailSyncService:
    """Dependency to get MailSyncService instance"""
    return MailSyncService(db)
