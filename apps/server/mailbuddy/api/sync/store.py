"""Local Store for synced mail.

`SyncStore` is what the engine writes through. Every mutation is an upsert, a
delta or an unconditional delete, so a pass that is re-run over the same
window never duplicates rows. `MongoSyncStore` keeps the data in MongoDB and
encrypts sensitive email fields at rest.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from functools import wraps
from typing import Dict, Iterable, List, Optional, Sequence, Set

from bson import ObjectId
from bson.errors import BSONError, InvalidId
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from mailbuddy.api.sync.errors import StoreError
from mailbuddy.api.sync.models import (
    STARRED_LABEL,
    UNREAD_LABEL,
    EmailRecord,
    LinkedAccount,
    MessageStub,
    SyncCursor,
    utcnow,
)
from mailbuddy.utils.security import decrypt_text, encrypt_text

logger = logging.getLogger(__name__)

ENCRYPTED_FIELDS = ("subject", "body", "snippet")
DUPLICATE_KEY_CODE = 11000


class SyncStore(ABC):
    @abstractmethod
    async def get_cursor(self, account_id: str) -> Optional[SyncCursor]:
        ...

    @abstractmethod
    async def set_in_progress(self, account_id: str, in_progress: bool) -> None:
        """Create the cursor record lazily and flip the advisory flag."""

    @abstractmethod
    async def set_cursor(self, account_id: str, cursor: str) -> None:
        """Replace the cursor token and stamp the last-sync time."""

    @abstractmethod
    async def clear_cursor(self, account_id: str) -> None:
        ...

    @abstractmethod
    async def existing_stub_ids(self, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        ...

    @abstractmethod
    async def insert_stubs(self, stubs: Sequence[MessageStub]) -> int:
        """Insert stubs, skipping duplicates. Returns the number inserted."""

    @abstractmethod
    async def existing_email_ids(self, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        ...

    @abstractmethod
    async def create_email(self, record: EmailRecord) -> bool:
        """Create the record (and its stub) if absent. Returns True when created."""

    @abstractmethod
    async def get_email(self, account_id: str, message_id: str) -> Optional[EmailRecord]:
        ...

    @abstractmethod
    async def apply_label_delta(self, account_id: str, message_id: str, added: Iterable[str], removed: Iterable[str]) -> bool:
        """Apply a label delta and re-derive read/starred. False when no record exists."""

    @abstractmethod
    async def delete_messages(self, account_id: str, message_ids: Sequence[str]) -> int:
        ...

    @abstractmethod
    async def count_stubs(self, account_id: str) -> int:
        ...

    @abstractmethod
    async def get_linked_account(self, account_id: str) -> Optional[LinkedAccount]:
        ...

    @abstractmethod
    async def save_access_token(self, account_id: str, access_token: str) -> None:
        ...

    @abstractmethod
    async def list_accounts_to_sync(self, limit: int) -> List[str]:
        """Linked accounts, least recently synced first."""


def _store_operation(func):
    """Surface driver, encoding and encryption failures as StoreError so a pass can abort cleanly."""
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (PyMongoError, BSONError, ValueError) as e:
            logger.error(f"[STORE] {func.__name__} failed: {e}")
            raise StoreError(f"{func.__name__} failed: {e}") from e
    return wrapper


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class MongoSyncStore(SyncStore):
    def __init__(self, db: AsyncDatabase, batch_size: int = 500):
        self.db = db
        self.batch_size = batch_size
        self.stubs_collection = db["message_stubs"]
        self.emails_collection = db["emails"]
        self.sync_state_collection = db["mail_sync_state"]
        self.users_collection = db["users"]

    @_store_operation
    async def get_cursor(self, account_id: str) -> Optional[SyncCursor]:
        doc = await self.sync_state_collection.find_one({"account_id": account_id})
        if not doc:
            return None
        return SyncCursor(
            account_id=account_id,
            cursor=doc.get("cursor"),
            last_sync_at=doc.get("last_sync_at"),
            sync_in_progress=bool(doc.get("sync_in_progress", False)),
            sync_started_at=doc.get("sync_started_at"),
        )

    @_store_operation
    async def set_in_progress(self, account_id: str, in_progress: bool) -> None:
        now = utcnow()
        update = {"sync_in_progress": in_progress, "updated_at": now}
        if in_progress:
            update["sync_started_at"] = now
        await self.sync_state_collection.update_one(
            {"account_id": account_id},
            {"$set": update, "$setOnInsert": {"cursor": None, "created_at": now}},
            upsert=True
        )

    @_store_operation
    async def set_cursor(self, account_id: str, cursor: str) -> None:
        now = utcnow()
        await self.sync_state_collection.update_one(
            {"account_id": account_id},
            {"$set": {"cursor": cursor, "last_sync_at": now, "updated_at": now},
             "$setOnInsert": {"created_at": now}},
            upsert=True
        )

    @_store_operation
    async def clear_cursor(self, account_id: str) -> None:
        now = utcnow()
        await self.sync_state_collection.update_one(
            {"account_id": account_id},
            {"$set": {"cursor": None, "last_sync_at": now, "updated_at": now}},
            upsert=True
        )

    async def _existing_ids(self, collection, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        existing: Set[str] = set()
        for chunk in _chunks(list(message_ids), self.batch_size):
            docs = await collection.find(
                {"account_id": account_id, "message_id": {"$in": chunk}},
                {"message_id": 1}
            ).to_list(length=None)
            existing.update(doc["message_id"] for doc in docs)
        return existing

    @_store_operation
    async def existing_stub_ids(self, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        return await self._existing_ids(self.stubs_collection, account_id, message_ids)

    @_store_operation
    async def insert_stubs(self, stubs: Sequence[MessageStub]) -> int:
        if not stubs:
            return 0
        docs = [stub.model_dump() for stub in stubs]
        try:
            result = await self.stubs_collection.insert_many(docs, ordered=False)
            return len(result.inserted_ids)
        except BulkWriteError as e:
            # a concurrent writer got there first; duplicates are fine
            write_errors = e.details.get("writeErrors", [])
            if any(err.get("code") != DUPLICATE_KEY_CODE for err in write_errors):
                raise
            return e.details.get("nInserted", 0)

    @_store_operation
    async def existing_email_ids(self, account_id: str, message_ids: Sequence[str]) -> Set[str]:
        return await self._existing_ids(self.emails_collection, account_id, message_ids)

    def _encrypt_record(self, record: EmailRecord) -> Dict:
        doc = record.model_dump()
        for field in ENCRYPTED_FIELDS:
            doc[field] = encrypt_text(doc.get(field) or "")
        return doc

    def _decrypt_doc(self, doc: Dict) -> EmailRecord:
        data = {k: v for k, v in doc.items() if k != "_id"}
        for field in ENCRYPTED_FIELDS:
            data[field] = decrypt_text(data.get(field)) or ""
        return EmailRecord.model_validate(data)

    @_store_operation
    async def create_email(self, record: EmailRecord) -> bool:
        doc = self._encrypt_record(record)
        await self.stubs_collection.update_one(
            {"account_id": record.account_id, "message_id": record.message_id},
            {"$setOnInsert": MessageStub(
                account_id=record.account_id,
                message_id=record.message_id,
                thread_id=record.thread_id,
            ).model_dump()},
            upsert=True
        )
        try:
            result = await self.emails_collection.update_one(
                {"account_id": record.account_id, "message_id": record.message_id},
                {"$setOnInsert": doc},
                upsert=True
            )
        except DuplicateKeyError:
            return False
        return result.upserted_id is not None

    @_store_operation
    async def get_email(self, account_id: str, message_id: str) -> Optional[EmailRecord]:
        doc = await self.emails_collection.find_one({"account_id": account_id, "message_id": message_id})
        return self._decrypt_doc(doc) if doc else None

    @_store_operation
    async def apply_label_delta(self, account_id: str, message_id: str, added: Iterable[str], removed: Iterable[str]) -> bool:
        key = {"account_id": account_id, "message_id": message_id}
        added, removed = list(added), list(removed)
        # $addToSet and $pull on the same path cannot share one update
        if added:
            result = await self.emails_collection.update_one(key, {"$addToSet": {"labels": {"$each": added}}})
            if result.matched_count == 0:
                return False
        if removed:
            result = await self.emails_collection.update_one(key, {"$pull": {"labels": {"$in": removed}}})
            if result.matched_count == 0:
                return False
        result = await self.emails_collection.update_one(key, [
            {"$set": {
                "is_read": {"$not": [{"$in": [UNREAD_LABEL, "$labels"]}]},
                "is_starred": {"$in": [STARRED_LABEL, "$labels"]},
                "updated_at": utcnow(),
            }}
        ])
        return result.matched_count > 0

    @_store_operation
    async def delete_messages(self, account_id: str, message_ids: Sequence[str]) -> int:
        if not message_ids:
            return 0
        ids = list(message_ids)
        await self.emails_collection.delete_many({"account_id": account_id, "message_id": {"$in": ids}})
        result = await self.stubs_collection.delete_many({"account_id": account_id, "message_id": {"$in": ids}})
        return result.deleted_count

    @_store_operation
    async def count_stubs(self, account_id: str) -> int:
        return await self.stubs_collection.count_documents({"account_id": account_id})

    async def _find_user(self, account_id: str) -> Optional[dict]:
        try:
            user = await self.users_collection.find_one({"_id": ObjectId(account_id)})
        except InvalidId:
            user = None
        if user is None:
            user = await self.users_collection.find_one({"_id": account_id})
        return user

    @_store_operation
    async def get_linked_account(self, account_id: str) -> Optional[LinkedAccount]:
        user = await self._find_user(account_id)
        if not user or not user.get("google_refresh_token"):
            return None
        return LinkedAccount(
            account_id=account_id,
            email=user.get("email", ""),
            access_token=decrypt_text(user.get("google_access_token")),
            refresh_token=decrypt_text(user["google_refresh_token"]),
        )

    @_store_operation
    async def save_access_token(self, account_id: str, access_token: str) -> None:
        user = await self._find_user(account_id)
        if not user:
            logger.warning(f"[STORE] Cannot persist refreshed token, account {account_id} not found")
            return
        await self.users_collection.update_one(
            {"_id": user["_id"]},
            {"$set": {"google_access_token": encrypt_text(access_token), "updated_at": utcnow()}}
        )

    @_store_operation
    async def list_accounts_to_sync(self, limit: int) -> List[str]:
        users = await self.users_collection.find(
            {"google_refresh_token": {"$exists": True, "$ne": None}},
            {"_id": 1}
        ).to_list(length=None)
        account_ids = [str(user["_id"]) for user in users]
        if not account_ids:
            return []

        states = await self.sync_state_collection.find(
            {"account_id": {"$in": account_ids}},
            {"account_id": 1, "last_sync_at": 1}
        ).to_list(length=None)
        last_sync: Dict[str, datetime] = {s["account_id"]: s.get("last_sync_at") for s in states}
        never = datetime.min

        def sort_key(account_id: str):
            value = last_sync.get(account_id)
            return value.replace(tzinfo=None) if value else never

        return sorted(account_ids, key=sort_key)[:limit]


STALE_SYNC_AFTER = timedelta(minutes=30)


def is_sync_flag_active(state: Optional[SyncCursor], stale_after: timedelta = STALE_SYNC_AFTER) -> bool:
    """True when another pass holds the advisory flag and it is not abandoned."""
    if not state or not state.sync_in_progress:
        return False
    if not state.sync_started_at:
        return True
    started = state.sync_started_at
    now = utcnow()
    if started.tzinfo is None:
        now = now.replace(tzinfo=None)
    return now - started < stale_after
