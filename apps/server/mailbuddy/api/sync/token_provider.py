import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailbuddy.config import settings

logger = logging.getLogger(__name__)


class TokenProvider(ABC):
    @abstractmethod
    async def refresh_credential(self, refresh_token: str) -> Optional[str]:
        """Exchange a refresh credential for a new access credential, None on failure."""


class GoogleTokenProvider(TokenProvider):
    """Refreshes Google OAuth access tokens with the app's client credentials."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_uri: Optional[str] = None,
    ):
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET
        self.token_uri = token_uri or settings.GOOGLE_TOKEN_URI

    def _refresh_blocking(self, refresh_token: str) -> Optional[str]:
        creds = Credentials(
            None,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret
        )
        creds.refresh(Request())
        return creds.token

    async def refresh_credential(self, refresh_token: str) -> Optional[str]:
        if not refresh_token:
            return None
        try:
            return await asyncio.to_thread(self._refresh_blocking, refresh_token)
        except RefreshError as e:
            if "invalid_grant" in str(e):
                logger.warning(f"[TOKEN] Refresh token revoked or expired (invalid_grant): {e}")
            else:
                logger.warning(f"[TOKEN] Failed to refresh access token: {e}")
            return None
        except TransportError as e:
            logger.warning(f"[TOKEN] Network error while refreshing access token: {e}")
            return None
