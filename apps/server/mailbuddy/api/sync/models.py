"""Pydantic models for the Gmail sync engine.

Remote payloads are parsed into explicit structures at the client boundary so
the engine never handles raw Gmail dictionaries.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mailbuddy.api.sync.mime import extract_content_from_parts

UNREAD_LABEL = "UNREAD"
STARRED_LABEL = "STARRED"
NO_CONTENT_PLACEHOLDER = "No content available"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


class MessageRef(CamelModel):
    """Identity pair returned by the listing endpoint."""
    id: str
    thread_id: str = ""


class ListPage(CamelModel):
    items: List[MessageRef] = []
    next_page_token: Optional[str] = None


class MessageHeader(CamelModel):
    name: str
    value: str = ""


class MessageBody(CamelModel):
    data: Optional[str] = None
    size: int = 0
    attachment_id: Optional[str] = None


class MessagePart(CamelModel):
    """One node of the MIME tree. Leaves carry body data, containers carry parts."""
    part_id: Optional[str] = None
    mime_type: str = ""
    filename: Optional[str] = None
    headers: List[MessageHeader] = []
    body: MessageBody = Field(default_factory=MessageBody)
    parts: List["MessagePart"] = []


class RemoteMessage(CamelModel):
    id: str
    thread_id: str = ""
    label_ids: List[str] = []
    snippet: str = ""
    history_id: Optional[str] = None
    internal_date: Optional[str] = None
    payload: Optional[MessagePart] = None

    def header(self, name: str) -> str:
        """Case-insensitive header lookup, empty string when absent."""
        if not self.payload:
            return ""
        for h in self.payload.headers:
            if h.name.lower() == name.lower():
                return h.value
        return ""

    def internal_datetime(self) -> Optional[datetime]:
        if not self.internal_date:
            return None
        try:
            return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            return None


class HistoryEventKind(str, Enum):
    MESSAGE_ADDED = "messageAdded"
    MESSAGE_DELETED = "messageDeleted"
    LABEL_ADDED = "labelAdded"
    LABEL_REMOVED = "labelRemoved"


class HistoryEvent(CamelModel):
    kind: HistoryEventKind
    message_id: str
    thread_id: str = ""
    label_ids: List[str] = []


class ChangePage(CamelModel):
    """One page of the change feed plus the cursor to resume from afterwards."""
    events: List[HistoryEvent] = []
    new_cursor_token: Optional[str] = None


class MessageStub(CamelModel):
    account_id: str
    message_id: str
    thread_id: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class EmailRecord(CamelModel):
    """Full email as handed to and returned from the store, in plaintext."""
    account_id: str
    message_id: str
    thread_id: str = ""
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    snippet: str = ""
    body: str = ""
    is_read: bool = True
    is_starred: bool = False
    labels: List[str] = []
    internal_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_remote(cls, account_id: str, message: RemoteMessage) -> "EmailRecord":
        content = extract_content_from_parts(message.payload) if message.payload else {"text": "", "html": ""}
        labels = list(message.label_ids)
        return cls(
            account_id=account_id,
            message_id=message.id,
            thread_id=message.thread_id,
            subject=message.header("Subject"),
            sender=message.header("From"),
            recipient=message.header("To"),
            snippet=message.snippet or "",
            body=content["html"] or content["text"] or message.snippet or NO_CONTENT_PLACEHOLDER,
            **derive_flags(labels),
            labels=labels,
            internal_date=message.internal_datetime(),
        )


def derive_flags(labels: List[str]) -> dict:
    """Read/starred flags implied by a label set."""
    return {"is_read": UNREAD_LABEL not in labels, "is_starred": STARRED_LABEL in labels}


class SyncCursor(CamelModel):
    account_id: str
    cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    sync_in_progress: bool = False
    sync_started_at: Optional[datetime] = None


class LinkedAccount(CamelModel):
    account_id: str
    email: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class SyncStatus(str, Enum):
    OK = "ok"
    NO_ACCOUNT = "no_account"
    RECONNECT_REQUIRED = "reconnect_required"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    HISTORY_RESET = "history_reset"
    CANCELLED = "cancelled"
    ALREADY_RUNNING = "already_running"


STATUS_MESSAGES = {
    SyncStatus.OK: "Sync completed",
    SyncStatus.NO_ACCOUNT: "No account linked",
    SyncStatus.RECONNECT_REQUIRED: "Authentication expired, please reconnect",
    SyncStatus.TEMPORARILY_UNAVAILABLE: "Sync temporarily unavailable, will retry",
    SyncStatus.HISTORY_RESET: "History unavailable, performing full resync",
    SyncStatus.CANCELLED: "Sync cancelled",
    SyncStatus.ALREADY_RUNNING: "A sync is already running for this account",
}


class ChangeCounts(CamelModel):
    added: int = 0
    deleted: int = 0
    labels_added: int = 0
    labels_removed: int = 0
    stubs_created: int = 0
    fetched: int = 0
    failed: int = 0


class SyncResult(CamelModel):
    success: bool
    status: SyncStatus = SyncStatus.OK
    message: str = ""
    cursor: Optional[str] = None
    counts: ChangeCounts = Field(default_factory=ChangeCounts)
    error: Optional[str] = None

    @classmethod
    def of(cls, status: SyncStatus, success: bool, **kwargs) -> "SyncResult":
        return cls(success=success, status=status, message=STATUS_MESSAGES[status], **kwargs)


class SyncProgressEvent(CamelModel):
    """Newline-delimited JSON event streamed to clients while a sync runs."""
    type: str
    message: str = ""
    total: Optional[int] = None
    processed: Optional[int] = None
    batch: Optional[int] = None
    batches: Optional[int] = None
    result: Optional[SyncResult] = None

    def to_ndjson(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"
