import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from mailbuddy.api.auth.dependencies import CurrentAccount, get_current_account
from mailbuddy.api.sync.dependencies import get_sync_service
from mailbuddy.api.sync.models import SyncResult, SyncStatus
from mailbuddy.api.sync.service import MailSyncService
from mailbuddy.models.api_response import APIResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])

# failed pass outcome -> HTTP status
_ERROR_STATUS_CODES = {
    SyncStatus.NO_ACCOUNT: status.HTTP_404_NOT_FOUND,
    SyncStatus.RECONNECT_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    SyncStatus.ALREADY_RUNNING: status.HTTP_409_CONFLICT,
    SyncStatus.TEMPORARILY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_result(result: SyncResult) -> None:
    code = _ERROR_STATUS_CODES.get(result.status)
    if code is not None and not result.success:
        raise HTTPException(status_code=code, detail=result.message)


@router.post("", response_model=APIResponse[SyncResult])
async def sync_mailbox(
    sync_service: MailSyncService = Depends(get_sync_service),
    current_account: CurrentAccount = Depends(get_current_account)
):
    """Run a sync pass: full when the account has never synced, incremental otherwise."""
    result = await sync_service.sync_account(current_account.id)
    raise_for_result(result)
    return APIResponse(data=result, message=result.message)


@router.post("/full")
async def full_sync_mailbox(
    sync_service: MailSyncService = Depends(get_sync_service),
    current_account: CurrentAccount = Depends(get_current_account)
):
    """Run a full sync and stream its progress as newline-delimited JSON."""
    if sync_service.is_running(current_account.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A sync is already running for this account")
    return StreamingResponse(
        sync_service.stream_full_sync(current_account.id),
        media_type="application/x-ndjson",
    )


@router.delete("", response_model=APIResponse[dict])
async def cancel_sync(
    sync_service: MailSyncService = Depends(get_sync_service),
    current_account: CurrentAccount = Depends(get_current_account)
):
    if not sync_service.cancel_sync(current_account.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sync in progress")
    return APIResponse(data={"cancelled": True}, message="Sync cancellation requested")


@router.get("/status", response_model=APIResponse[dict])
async def get_sync_status(
    sync_service: MailSyncService = Depends(get_sync_service),
    current_account: CurrentAccount = Depends(get_current_account)
):
    data = await sync_service.get_status(current_account.id)
    return APIResponse(data=data, message="Sync status retrieved successfully")
