"""Remote mailbox client.

`MailboxClient` is the contract the sync engine consumes. `GmailMailboxClient`
implements it on top of the Gmail REST API via google-api-python-client.
"""

import asyncio
import json
import logging
import socket
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from mailbuddy.api.sync.errors import (
    CredentialExpiredError,
    CursorNotFoundError,
    RemoteApiError,
    TransientRemoteError,
    looks_like_auth_failure,
)
from mailbuddy.api.sync.models import (
    ChangePage,
    HistoryEvent,
    HistoryEventKind,
    ListPage,
    MessageRef,
    RemoteMessage,
)

logger = logging.getLogger(__name__)

GMAIL_USER_ID = "me"
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")

# history record key -> event kind
_HISTORY_KEYS = {
    "messagesAdded": HistoryEventKind.MESSAGE_ADDED,
    "messagesDeleted": HistoryEventKind.MESSAGE_DELETED,
    "labelsAdded": HistoryEventKind.LABEL_ADDED,
    "labelsRemoved": HistoryEventKind.LABEL_REMOVED,
}


class MailboxClient(ABC):
    """Paginated listing, full fetch and change feed over one remote mailbox."""

    @abstractmethod
    async def list_messages(self, page_token: Optional[str] = None, page_size: int = 500) -> ListPage:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> RemoteMessage:
        ...

    @abstractmethod
    async def get_changes_since(self, cursor: str, max_results: int = 500) -> ChangePage:
        """Raises CursorNotFoundError when the cursor is unknown to the provider."""

    @abstractmethod
    async def get_current_cursor(self) -> str:
        ...


def classify_http_error(error: HttpError, cursor_lookup: bool = False) -> RemoteApiError:
    """Map a Gmail HttpError onto the sync error taxonomy."""
    status = getattr(error.resp, "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None

    content = error.content.decode("utf-8", errors="ignore") if isinstance(error.content, bytes) else str(error.content or "")
    reason = content
    error_reasons: List[str] = []
    try:
        details = json.loads(content).get("error", {})
        reason = details.get("message", content)
        error_reasons = [e.get("reason", "") for e in details.get("errors", []) or [] if isinstance(e, dict)]
    except (ValueError, AttributeError):
        pass

    if looks_like_auth_failure(status, content):
        return CredentialExpiredError(f"Gmail rejected credentials: {reason}", status=status)
    if cursor_lookup and status == 404:
        return CursorNotFoundError(f"Start history id not found: {reason}", status=status)
    # Gmail reports quota exhaustion as 403 with a rate limit reason
    if status == 403 and any(r in RATE_LIMIT_REASONS for r in error_reasons):
        return TransientRemoteError(f"Gmail rate limit reached ({status}): {reason}", status=status)
    if status == 429 or (status is not None and status >= 500):
        return TransientRemoteError(f"Gmail temporarily unavailable ({status}): {reason}", status=status)
    return RemoteApiError(f"Gmail API error ({status}): {reason}", status=status)


def parse_history_response(response: Dict[str, Any], fallback_cursor: str) -> ChangePage:
    """Flatten Gmail history records into events and pick the resume cursor.

    When the provider reports more pages, the cursor stops at the last record
    returned so the next pass starts from unprocessed history.
    """
    events: List[HistoryEvent] = []
    records = response.get("history", []) or []
    for record in records:
        for key, kind in _HISTORY_KEYS.items():
            for entry in record.get(key, []) or []:
                message = entry.get("message", {}) or {}
                msg_id = message.get("id")
                if not msg_id:
                    continue
                label_ids = entry.get("labelIds") if kind in (HistoryEventKind.LABEL_ADDED, HistoryEventKind.LABEL_REMOVED) else message.get("labelIds")
                events.append(HistoryEvent(
                    kind=kind,
                    message_id=msg_id,
                    thread_id=message.get("threadId", "") or "",
                    label_ids=label_ids or [],
                ))

    if response.get("nextPageToken") and records:
        new_cursor = str(records[-1].get("id") or fallback_cursor)
    else:
        new_cursor = str(response.get("historyId") or fallback_cursor)
    return ChangePage(events=events, new_cursor_token=new_cursor)


class GmailMailboxClient(MailboxClient):
    """Gmail implementation. Blocking `execute()` calls run in worker threads.

    httplib2 connections are not thread-safe, so every execution gets its own
    authorized transport. The cached service is only used to build requests.
    """

    def __init__(
        self,
        access_token_getter: Callable[[], Optional[str]],
        transient_retries: int = 3,
        request_timeout: float = 60,
        api_endpoint: Optional[str] = None,
    ):
        self._access_token_getter = access_token_getter
        self._transient_retries = max(1, transient_retries)
        self._request_timeout = request_timeout
        self._client_options = {"api_endpoint": api_endpoint} if api_endpoint else None
        self._service = None
        self._service_token: Optional[str] = None

    def _current_token(self) -> str:
        token = self._access_token_getter()
        if not token:
            raise CredentialExpiredError("No access token available", status=401)
        return token

    def _get_service(self, token: str):
        if self._service is None or token != self._service_token:
            creds = Credentials(token)
            self._service = build(
                "gmail", "v1",
                credentials=creds,
                cache_discovery=False,
                client_options=self._client_options,
            )
            self._service_token = token
        return self._service

    def _new_http(self, token: str) -> AuthorizedHttp:
        # 401s must come back as HttpError; refreshing is the caller's job
        return AuthorizedHttp(
            Credentials(token),
            http=httplib2.Http(timeout=self._request_timeout),
            refresh_status_codes=(),
        )

    async def _execute(self, label: str, request_factory: Callable[[Any], Any], cursor_lookup: bool = False) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._transient_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            retry=retry_if_exception_type(TransientRemoteError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"[GMAIL API] Retrying {label} (attempt {attempt.retry_state.attempt_number})")
                try:
                    token = self._current_token()
                    request = request_factory(self._get_service(token))
                    return await asyncio.to_thread(request.execute, http=self._new_http(token))
                except HttpError as e:
                    raise classify_http_error(e, cursor_lookup=cursor_lookup) from e
                except RefreshError as e:
                    raise CredentialExpiredError(f"Gmail rejected credentials: {e}", status=401) from e
                except (TransportError, httplib2.HttpLib2Error, socket.timeout, ConnectionError, TimeoutError) as e:
                    raise TransientRemoteError(f"Network error during {label}: {e}") from e

    async def list_messages(self, page_token: Optional[str] = None, page_size: int = 500) -> ListPage:
        response = await self._execute(
            "messages.list",
            lambda service: service.users().messages().list(
                userId=GMAIL_USER_ID,
                maxResults=page_size,
                pageToken=page_token,
            ),
        )
        items = [
            MessageRef(id=m["id"], thread_id=m.get("threadId", "") or "")
            for m in response.get("messages", []) or []
            if m.get("id")
        ]
        return ListPage(items=items, next_page_token=response.get("nextPageToken"))

    async def get_message(self, message_id: str) -> RemoteMessage:
        response = await self._execute(
            "messages.get",
            lambda service: service.users().messages().get(
                userId=GMAIL_USER_ID,
                id=message_id,
                format="full",
            ),
        )
        return RemoteMessage.model_validate(response)

    async def get_changes_since(self, cursor: str, max_results: int = 500) -> ChangePage:
        response = await self._execute(
            "history.list",
            lambda service: service.users().history().list(
                userId=GMAIL_USER_ID,
                startHistoryId=cursor,
                historyTypes=HISTORY_TYPES,
                maxResults=max_results,
            ),
            cursor_lookup=True,
        )
        return parse_history_response(response, fallback_cursor=cursor)

    async def get_current_cursor(self) -> str:
        response = await self._execute(
            "getProfile",
            lambda service: service.users().getProfile(userId=GMAIL_USER_ID),
        )
        history_id = response.get("historyId")
        if not history_id:
            raise RemoteApiError("Gmail profile did not include a historyId")
        return str(history_id)
