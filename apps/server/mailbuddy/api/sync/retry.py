"""Credential refresh around remote mailbox calls.

Every remote call goes through `AuthRetryWrapper.call`: an expired credential
triggers exactly one refresh-and-retry. `call_with_auth_retries` layers a small
pass-level budget on top for the listing, change-feed and profile calls.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt

from mailbuddy.api.sync.errors import AuthenticationFailedError, CredentialExpiredError
from mailbuddy.api.sync.models import LinkedAccount
from mailbuddy.api.sync.token_provider import TokenProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_ATTEMPTS = 1


class AuthRetryWrapper:
    """Holds the live access credential of one account and refreshes it on demand."""

    def __init__(
        self,
        account: LinkedAccount,
        token_provider: TokenProvider,
        on_refreshed: Optional[Callable[[str, str], Awaitable[None]]] = None,
    ):
        self.account_id = account.account_id
        self._access_token = account.access_token
        self._refresh_token = account.refresh_token
        self._token_provider = token_provider
        self._on_refreshed = on_refreshed
        self._refresh_lock = asyncio.Lock()

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    async def refresh(self, stale_token: Optional[str] = None) -> Optional[str]:
        """Refresh once per stale credential even when many calls fail together."""
        async with self._refresh_lock:
            if self._access_token and stale_token is not None and self._access_token != stale_token:
                return self._access_token
            if not self._refresh_token:
                logger.warning(f"[GMAIL API] No refresh token stored for account {self.account_id}")
                return None
            new_token = await self._token_provider.refresh_credential(self._refresh_token)
            if not new_token:
                logger.warning(f"[GMAIL API] Failed to refresh access token for account {self.account_id}")
                return None
            self._access_token = new_token
            if self._on_refreshed:
                await self._on_refreshed(self.account_id, new_token)
            logger.info(f"[GMAIL API] Refreshed access token for account {self.account_id}")
            return new_token

    async def call(self, operation: Callable[[], Awaitable[T]], retry_count: int = 0) -> Optional[T]:
        """Run `operation`; on an expired credential refresh and retry at most once.

        Returns None when invoked past the retry budget. Raises
        AuthenticationFailedError when the refresh itself fails.
        """
        if retry_count > MAX_RETRY_ATTEMPTS:
            logger.warning(f"[GMAIL API] Exceeded max retry attempts for account {self.account_id}")
            return None

        if not self._access_token:
            if not await self.refresh():
                raise AuthenticationFailedError("Failed to obtain access token")

        token_used = self._access_token
        try:
            return await operation()
        except CredentialExpiredError:
            if retry_count >= MAX_RETRY_ATTEMPTS:
                raise
            logger.info(f"[GMAIL API] Credential expired for account {self.account_id}, refreshing")
            if not await self.refresh(stale_token=token_used):
                raise AuthenticationFailedError(f"Token refresh failed for account {self.account_id}")
            return await self.call(operation, retry_count + 1)


async def call_with_auth_retries(
    auth: AuthRetryWrapper,
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
) -> Optional[T]:
    """Retry a call whose credential keeps being rejected even after refreshing.

    Distinguishes "auth error, refreshed, retry" (handled inside the wrapper)
    from "auth error persists", which ends as AuthenticationFailedError.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, attempts)),
            retry=retry_if_exception_type(CredentialExpiredError),
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"[GMAIL API] Authorization still failing for account {auth.account_id}, attempt {attempt.retry_state.attempt_number}/{attempts}")
                return await auth.call(operation)
    except RetryError as e:
        raise AuthenticationFailedError(
            f"Authorization kept failing for account {auth.account_id} after {attempts} attempts"
        ) from e.last_attempt.exception()
