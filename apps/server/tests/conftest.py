"""In-memory stand-ins for the store, the Gmail client, MongoDB and the token endpoint."""

import asyncio
import base64
from types import SimpleNamespace
from typing import Dict, Iterable, List, Optional, Sequence, Set

import pytest
from bson import ObjectId
from cryptography.fernet import Fernet
from pymongo.errors import BulkWriteError

from mailbuddy.api.sync.engine import SyncOptions
from mailbuddy.api.sync.errors import CredentialExpiredError, CursorNotFoundError
from mailbuddy.api.sync.gmail_client import MailboxClient
from mailbuddy.api.sync.models import (
    ChangePage,
    EmailRecord,
    LinkedAccount,
    ListPage,
    MessageRef,
    MessageStub,
    RemoteMessage,
    STARRED_LABEL,
    SyncCursor,
    UNREAD_LABEL,
    utcnow,
)
from mailbuddy.api.sync.registry import SyncSessionRegistry
from mailbuddy.api.sync.service import MailSyncService
from mailbuddy.api.sync.store import MongoSyncStore, SyncStore
from mailbuddy.api.sync.token_provider import TokenProvider
from mailbuddy.utils import security

ACCOUNT_ID = "acct-1"


def gmail_message(message_id: str, labels: Optional[List[str]] = None, subject: str = "Hello", text: str = "Body text") -> RemoteMessage:
    """A Gmail `messages.get` response in its wire shape."""
    data = base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")
    return RemoteMessage.model_validate({
        "id": message_id,
        "threadId": f"t-{message_id}",
        "labelIds": labels if labels is not None else ["INBOX"],
        "snippet": text[:20],
        "historyId": "1",
        "internalDate": "1700000000000",
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "Alice <alice@example.com>"},
                {"name": "To", "value": "bob@example.com"},
            ],
            "parts": [
                {"partId": "0", "mimeType": "text/plain", "body": {"data": data, "size": len(text)}},
            ],
        },
    })


class InMemorySyncStore(SyncStore):
    def __init__(self):
        self.stubs: Dict[str, Dict[str, MessageStub]] = {}
        self.emails: Dict[str, Dict[str, EmailRecord]] = {}
        self.states: Dict[str, SyncCursor] = {}
        self.accounts: Dict[str, LinkedAccount] = {}
        self.flag_history: List[bool] = []
        self.failures: Dict[str, Exception] = {}

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def _state(self, account_id: str) -> SyncCursor:
        return self.states.setdefault(account_id, SyncCursor(account_id=account_id))

    async def get_cursor(self, account_id: str) -> Optional[SyncCursor]:
        self._maybe_fail("get_cursor")
        state = self.states.get(account_id)
        return state.model_copy() if state else None

    async def set_in_progress(self, account_id: str, in_progress: bool) -> None:
        self.flag_history.append(in_progress)
        self._maybe_fail("set_in_progress")
        state = self._state(account_id)
        state.sync_in_progress = in_progress
        if in_progress:
            state.sync_started_at = utcnow()

    async def set_cursor(self, account_id: str, cursor: str) -> None:
        self._maybe_fail("set_cursor")
        state = self._state(account_id)
        state.cursor = cursor
        state.last_sync_at = utcnow()

    async def clear_cursor(self, account_id: str) -> None:
        self._maybe_fail("clear_cursor")
        self._state(account_id).cursor = None

    async def existing_stub_ids(self, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        known = self.stubs.get(account_id, {})
        return {msg_id for msg_id in message_ids if msg_id in known}

    async def insert_stubs(self, stubs: Sequence[MessageStub]) -> int:
        self._maybe_fail("insert_stubs")
        created = 0
        for stub in stubs:
            bucket = self.stubs.setdefault(stub.account_id, {})
            if stub.message_id not in bucket:
                bucket[stub.message_id] = stub
                created += 1
        return created

    async def existing_email_ids(self, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        known = self.emails.get(account_id, {})
        return {msg_id for msg_id in message_ids if msg_id in known}

    async def create_email(self, record: EmailRecord) -> bool:
        self._maybe_fail("create_email")
        self.stubs.setdefault(record.account_id, {}).setdefault(
            record.message_id,
            MessageStub(account_id=record.account_id, message_id=record.message_id, thread_id=record.thread_id),
        )
        bucket = self.emails.setdefault(record.account_id, {})
        if record.message_id in bucket:
            return False
        bucket[record.message_id] = record.model_copy(deep=True)
        return True

    async def get_email(self, account_id: str, message_id: str) -> Optional[EmailRecord]:
        return self.emails.get(account_id, {}).get(message_id)

    async def apply_label_delta(self, account_id: str, message_id: str, added: Iterable[str], removed: Iterable[str]) -> bool:
        self._maybe_fail("apply_label_delta")
        record = self.emails.get(account_id, {}).get(message_id)
        if record is None:
            return False
        labels = list(record.labels)
        for label in added:
            if label not in labels:
                labels.append(label)
        removed = set(removed)
        record.labels = [label for label in labels if label not in removed]
        record.is_read = UNREAD_LABEL not in record.labels
        record.is_starred = STARRED_LABEL in record.labels
        return True

    async def delete_messages(self, account_id: str, message_ids: Sequence[str]) -> int:
        self._maybe_fail("delete_messages")
        deleted = 0
        for msg_id in message_ids:
            self.emails.get(account_id, {}).pop(msg_id, None)
            if self.stubs.get(account_id, {}).pop(msg_id, None) is not None:
                deleted += 1
        return deleted

    async def count_stubs(self, account_id: str) -> int:
        return len(self.stubs.get(account_id, {}))

    async def get_linked_account(self, account_id: str) -> Optional[LinkedAccount]:
        return self.accounts.get(account_id)

    async def save_access_token(self, account_id: str, access_token: str) -> None:
        account = self.accounts.get(account_id)
        if account:
            account.access_token = access_token

    async def list_accounts_to_sync(self, limit: int) -> List[str]:
        def last_sync(account_id: str):
            state = self.states.get(account_id)
            return state.last_sync_at.timestamp() if state and state.last_sync_at else 0.0
        return sorted(self.accounts, key=last_sync)[:limit]


def _matches(doc: dict, query: dict) -> bool:
    for field, condition in query.items():
        value = doc.get(field)
        if isinstance(condition, dict) and any(key.startswith("$") for key in condition):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$exists" in condition and (field in doc) != condition["$exists"]:
                return False
            if "$ne" in condition and value == condition["$ne"]:
                return False
        elif value != condition:
            return False
    return True


def _evaluate(expr, doc: dict):
    """Aggregation expressions used by the store's pipeline updates."""
    if isinstance(expr, str) and expr.startswith("$"):
        return doc.get(expr[1:])
    if isinstance(expr, dict) and len(expr) == 1:
        op, args = next(iter(expr.items()))
        if op == "$not":
            return not _evaluate(args[0], doc)
        if op == "$in":
            return _evaluate(args[0], doc) in (_evaluate(args[1], doc) or [])
    return expr


def _apply_update(doc: dict, update, inserting: bool) -> None:
    if isinstance(update, list):
        for stage in update:
            for field, expr in stage["$set"].items():
                doc[field] = _evaluate(expr, doc)
        return
    if inserting:
        doc.update(update.get("$setOnInsert", {}))
    doc.update(update.get("$set", {}))
    for field, operand in update.get("$addToSet", {}).items():
        values = doc.setdefault(field, [])
        values.extend(v for v in operand["$each"] if v not in values)
    for field, operand in update.get("$pull", {}).items():
        doc[field] = [v for v in doc.get(field, []) if v not in operand["$in"]]


class FakeCursor:
    def __init__(self, docs: List[dict]):
        self._docs = docs

    async def to_list(self, length=None):
        return list(self._docs)


class FakeCollection:
    """The slice of AsyncCollection that MongoSyncStore uses, with an optional unique key."""

    def __init__(self, unique_key: Optional[tuple] = None):
        self.docs: List[dict] = []
        self.unique_key = unique_key
        self.updates: List[object] = []
        self.failure: Optional[Exception] = None

    def _maybe_fail(self) -> None:
        if self.failure:
            raise self.failure

    def _clashes(self, doc: dict) -> bool:
        if not self.unique_key:
            return False
        key = tuple(doc.get(f) for f in self.unique_key)
        return any(tuple(d.get(f) for f in self.unique_key) == key for d in self.docs)

    async def find_one(self, query: dict):
        self._maybe_fail()
        return next((dict(d) for d in self.docs if _matches(d, query)), None)

    def find(self, query: dict, projection: Optional[dict] = None) -> FakeCursor:
        self._maybe_fail()
        found = []
        for doc in self.docs:
            if _matches(doc, query):
                found.append({"_id": doc["_id"], **{k: doc[k] for k in projection if k in doc}} if projection else dict(doc))
        return FakeCursor(found)

    async def insert_many(self, docs: List[dict], ordered: bool = True):
        self._maybe_fail()
        inserted, errors = [], []
        for index, doc in enumerate(docs):
            if self._clashes(doc):
                errors.append({"index": index, "code": 11000, "errmsg": "E11000 duplicate key error"})
                if ordered:
                    break
                continue
            stored = {"_id": ObjectId(), **doc}
            self.docs.append(stored)
            inserted.append(stored["_id"])
        if errors:
            raise BulkWriteError({"writeErrors": errors, "nInserted": len(inserted)})
        return SimpleNamespace(inserted_ids=inserted)

    async def update_one(self, query: dict, update, upsert: bool = False):
        self._maybe_fail()
        self.updates.append(update)
        doc = next((d for d in self.docs if _matches(d, query)), None)
        if doc is not None:
            _apply_update(doc, update, inserting=False)
            return SimpleNamespace(matched_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, upserted_id=None)
        doc = {"_id": ObjectId(), **{k: v for k, v in query.items() if not isinstance(v, dict)}}
        _apply_update(doc, update, inserting=True)
        self.docs.append(doc)
        return SimpleNamespace(matched_count=0, upserted_id=doc["_id"])

    async def delete_many(self, query: dict):
        self._maybe_fail()
        kept = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return SimpleNamespace(deleted_count=deleted)

    async def count_documents(self, query: dict) -> int:
        self._maybe_fail()
        return sum(1 for d in self.docs if _matches(d, query))


class FakeDatabase:
    def __init__(self):
        message_key = ("account_id", "message_id")
        self.collections = {
            "message_stubs": FakeCollection(message_key),
            "emails": FakeCollection(message_key),
            "mail_sync_state": FakeCollection(("account_id",)),
            "users": FakeCollection(),
        }

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


class FakeMailboxClient(MailboxClient):
    """Serves a scripted mailbox and records how the engine drives it."""

    def __init__(self):
        self.pages: List[List[MessageRef]] = []
        self.messages: Dict[str, RemoteMessage] = {}
        self.changes: Dict[str, ChangePage] = {}
        self.invalid_cursors: Set[str] = set()
        self.current_cursor = "1000"
        self.expired_tokens: Set[str] = set()
        self.failing_messages: Dict[str, Exception] = {}
        self.list_failures: Dict[int, Exception] = {}
        self.fetch_log: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._token_getter = lambda: "token-1"

    def bind(self, token_getter):
        self._token_getter = token_getter
        return self

    def add_listing(self, *pages: List[str]) -> None:
        for ids in pages:
            self.pages.append([MessageRef(id=msg_id, thread_id=f"t-{msg_id}") for msg_id in ids])
            for msg_id in ids:
                self.messages.setdefault(msg_id, gmail_message(msg_id))

    def _check_token(self) -> None:
        if self._token_getter() in self.expired_tokens:
            raise CredentialExpiredError("Invalid Credentials", status=401)

    async def list_messages(self, page_token: Optional[str] = None, page_size: int = 500) -> ListPage:
        self._check_token()
        index = int(page_token) if page_token else 0
        if index in self.list_failures:
            raise self.list_failures[index]
        items = self.pages[index] if index < len(self.pages) else []
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return ListPage(items=items, next_page_token=next_token)

    async def get_message(self, message_id: str) -> RemoteMessage:
        self._check_token()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.fetch_log.append(message_id)
            if message_id in self.failing_messages:
                raise self.failing_messages[message_id]
            return self.messages[message_id]
        finally:
            self.in_flight -= 1

    async def get_changes_since(self, cursor: str, max_results: int = 500) -> ChangePage:
        self._check_token()
        if cursor in self.invalid_cursors:
            raise CursorNotFoundError(f"Start history id {cursor} not found", status=404)
        return self.changes.get(cursor, ChangePage(events=[], new_cursor_token=cursor))

    async def get_current_cursor(self) -> str:
        self._check_token()
        return self.current_cursor


class FakeTokenProvider(TokenProvider):
    def __init__(self, tokens: Optional[List[str]] = None):
        self.tokens = list(tokens) if tokens is not None else ["token-2", "token-3", "token-4"]
        self.calls = 0

    async def refresh_credential(self, refresh_token: str) -> Optional[str]:
        self.calls += 1
        return self.tokens.pop(0) if self.tokens else None


@pytest.fixture
def store():
    store = InMemorySyncStore()
    store.accounts[ACCOUNT_ID] = LinkedAccount(
        account_id=ACCOUNT_ID,
        email="bob@example.com",
        access_token="token-1",
        refresh_token="refresh-1",
    )
    return store


@pytest.fixture
def client():
    return FakeMailboxClient()


@pytest.fixture
def token_provider():
    return FakeTokenProvider()


@pytest.fixture
def registry():
    return SyncSessionRegistry()


@pytest.fixture
def options():
    return SyncOptions()


@pytest.fixture
def service(store, client, token_provider, registry, options):
    return MailSyncService(
        store=store,
        token_provider=token_provider,
        client_factory=client.bind,
        registry=registry,
        options=options,
    )


@pytest.fixture
def engine(service):
    return service.engine


@pytest.fixture
def cipher(monkeypatch):
    suite = Fernet(Fernet.generate_key())
    monkeypatch.setattr(security, "cipher_suite", suite)
    return suite


@pytest.fixture
def mongo_db(cipher):
    db = FakeDatabase()
    db["users"].docs.append({
        "_id": ACCOUNT_ID,
        "email": "bob@example.com",
        "google_access_token": security.encrypt_text("token-1"),
        "google_refresh_token": security.encrypt_text("refresh-1"),
    })
    return db


@pytest.fixture
def mongo_store(mongo_db):
    return MongoSyncStore(mongo_db, batch_size=2)


@pytest.fixture
def mongo_engine(mongo_store, client, token_provider, registry, options):
    return MailSyncService(
        store=mongo_store,
        token_provider=token_provider,
        client_factory=client.bind,
        registry=registry,
        options=options,
    ).engine
