"""Error taxonomy for the sync engine and its remote/store collaborators."""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync subsystem."""


class RemoteApiError(SyncError):
    """Non-retryable error returned by the remote mailbox."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientRemoteError(RemoteApiError):
    """Network blip, rate limit or 5xx. Safe to retry the same call."""


class CredentialExpiredError(RemoteApiError):
    """The access credential was rejected (401, invalid_grant, unauthorized)."""


class CursorNotFoundError(RemoteApiError):
    """The change feed no longer recognises the starting cursor."""


class AuthenticationFailedError(SyncError):
    """Refreshing the credential failed. The user has to reconnect the account."""


class AccountNotLinkedError(SyncError):
    """No Google credentials are stored for the account."""


class StoreError(SyncError):
    """A Local Store read or write failed."""


class SyncAlreadyRunningError(SyncError):
    """Another pass is registered for the same account."""


class SyncCancelledError(SyncError):
    """The pass observed its cancellation token and stopped."""


AUTH_ERROR_MARKERS = ("invalid_grant", "unauthorized", "invalid_credentials")


def looks_like_auth_failure(status: Optional[int], text: str) -> bool:
    """Provider-agnostic authorization failure check used when classifying errors."""
    if status == 401:
        return True
    lowered = (text or "").lower()
    return any(marker in lowered for marker in AUTH_ERROR_MARKERS)
