from fastapi import APIRouter

from mailbuddy.api.sync.router import router as sync_router

router = APIRouter()

router.include_router(sync_router)
