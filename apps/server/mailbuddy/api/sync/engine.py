"""
Gmail synchronization engine.

Handles:
- Full sync for accounts without a cursor (listing, stub persistence, backfill)
- Incremental sync from the change feed keyed by the stored cursor
- Cursor advancement and the advisory in-progress flag

Both passes are safe to re-run: stubs and records are created at most once,
label changes apply as deltas and deletes are unconditional.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel

from mailbuddy.api.sync.errors import (
    AccountNotLinkedError,
    AuthenticationFailedError,
    CursorNotFoundError,
    RemoteApiError,
    StoreError,
    SyncAlreadyRunningError,
    SyncCancelledError,
    SyncError,
)
from mailbuddy.api.sync.gmail_client import MailboxClient
from mailbuddy.api.sync.models import (
    ChangeCounts,
    ChangePage,
    EmailRecord,
    HistoryEvent,
    HistoryEventKind,
    MessageRef,
    MessageStub,
    SyncProgressEvent,
    SyncResult,
    SyncStatus,
)
from mailbuddy.api.sync.registry import CancellationToken, SyncSession, SyncSessionRegistry, registry as default_registry
from mailbuddy.api.sync.retry import AuthRetryWrapper, call_with_auth_retries
from mailbuddy.api.sync.store import SyncStore

logger = logging.getLogger(__name__)

EnrichmentHook = Callable[[str, EmailRecord], Awaitable[None]]
ProgressCallback = Callable[[SyncProgressEvent], Awaitable[None]]


class SyncOptions(BaseModel):
    list_page_size: int = 500
    stub_batch_size: int = 500
    backfill_limit: int = 50
    fetch_batch_size: int = 50
    history_max_results: int = 500
    auth_retries: int = 3

    @classmethod
    def from_settings(cls, settings) -> "SyncOptions":
        return cls(
            list_page_size=settings.MAIL_SYNC_LIST_PAGE_SIZE,
            stub_batch_size=settings.MAIL_SYNC_STUB_BATCH_SIZE,
            backfill_limit=settings.MAIL_SYNC_BACKFILL_LIMIT,
            fetch_batch_size=settings.MAIL_SYNC_FETCH_BATCH_SIZE,
            history_max_results=settings.MAIL_SYNC_HISTORY_MAX_RESULTS,
            auth_retries=settings.MAIL_SYNC_AUTH_RETRIES,
        )


@dataclass
class MailboxConnection:
    """A mailbox client paired with the credential wrapper guarding its calls."""
    client: MailboxClient
    auth: AuthRetryWrapper


MailboxConnector = Callable[[str], Awaitable[MailboxConnection]]


@dataclass
class ChangePlan:
    added: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    labels_added: Dict[str, Set[str]] = field(default_factory=dict)
    labels_removed: Dict[str, Set[str]] = field(default_factory=dict)
    thread_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def label_changed(self) -> List[str]:
        seen = dict.fromkeys(self.labels_added)
        seen.update(dict.fromkeys(self.labels_removed))
        return list(seen)


def partition_events(events: Sequence[HistoryEvent]) -> ChangePlan:
    """Split one change-feed page into added, deleted and label-delta sets.

    An id that is both added and deleted in the page counts as deleted. Label
    events are folded in feed order, so a label added and later removed ends
    up in the removed set only.
    """
    plan = ChangePlan()
    added: Dict[str, None] = {}
    deleted: Dict[str, None] = {}

    for event in events:
        msg_id = event.message_id
        if event.thread_id:
            plan.thread_ids.setdefault(msg_id, event.thread_id)

        if event.kind == HistoryEventKind.MESSAGE_ADDED:
            added.setdefault(msg_id, None)
        elif event.kind == HistoryEventKind.MESSAGE_DELETED:
            deleted.setdefault(msg_id, None)
        elif event.kind == HistoryEventKind.LABEL_ADDED:
            for label in event.label_ids:
                plan.labels_added.setdefault(msg_id, set()).add(label)
                plan.labels_removed.get(msg_id, set()).discard(label)
        elif event.kind == HistoryEventKind.LABEL_REMOVED:
            for label in event.label_ids:
                plan.labels_removed.setdefault(msg_id, set()).add(label)
                plan.labels_added.get(msg_id, set()).discard(label)

    plan.added = [msg_id for msg_id in added if msg_id not in deleted]
    plan.deleted = list(deleted)
    plan.labels_added = {k: v for k, v in plan.labels_added.items() if v and k not in deleted}
    plan.labels_removed = {k: v for k, v in plan.labels_removed.items() if v and k not in deleted}
    return plan


async def run_in_batches(
    items: Sequence[Any],
    batch_size: int,
    worker: Callable[[Any], Awaitable[Any]],
    token: Optional[CancellationToken] = None,
    before_batch: Optional[Callable[[int, int, Sequence[Any]], Awaitable[None]]] = None,
    after_batch: Optional[Callable[[int, int, Sequence[Any], List[Any]], Awaitable[None]]] = None,
) -> List[Any]:
    """Run `worker` over `items` in concurrent batches with settle-all semantics.

    Each batch waits for every item to finish (exceptions are returned, not
    raised) before the next batch starts. Cancellation stops new batches only.
    `after_batch` may raise to abort the remaining batches.
    """
    results: List[Any] = []
    batch_size = max(1, batch_size)
    total_batches = (len(items) + batch_size - 1) // batch_size
    for index in range(total_batches):
        if token is not None and token.cancelled:
            logger.info(f"[BATCH] Cancelled before batch {index + 1}/{total_batches}")
            break
        batch = items[index * batch_size:(index + 1) * batch_size]
        if before_batch:
            await before_batch(index, total_batches, batch)
        batch_results = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
        for outcome in batch_results:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
        results.extend(batch_results)
        if after_batch:
            await after_batch(index, total_batches, batch, batch_results)
    return results


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), max(1, size)):
        yield items[i:i + size]


class SyncEngine:
    """Orchestrates full and incremental passes for one account at a time."""

    def __init__(
        self,
        store: SyncStore,
        connector: MailboxConnector,
        registry: Optional[SyncSessionRegistry] = None,
        options: Optional[SyncOptions] = None,
        enrichment_hook: Optional[EnrichmentHook] = None,
    ):
        self.store = store
        self.connector = connector
        self.registry = registry or default_registry
        self.options = options or SyncOptions()
        self.enrichment_hook = enrichment_hook

    async def sync(
        self,
        account_id: str,
        cancel: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """Run a full sync when no cursor is stored, otherwise an incremental one."""
        try:
            state = await self.store.get_cursor(account_id)
        except StoreError as e:
            return SyncResult.of(SyncStatus.TEMPORARILY_UNAVAILABLE, False, error=str(e))

        if state and state.cursor:
            return await self.incremental_sync(account_id, state.cursor, cancel=cancel, on_progress=on_progress)
        return await self.full_sync(account_id, cancel=cancel, on_progress=on_progress)

    async def full_sync(
        self,
        account_id: str,
        cancel: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        return await self._run_pass(
            account_id, "full", cancel, on_progress,
            lambda session: self._full_sync_pass(session, on_progress),
        )

    async def incremental_sync(
        self,
        account_id: str,
        cursor: str,
        cancel: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        if not cursor:
            raise ValueError("incremental sync requires a stored cursor, run a full sync instead")
        return await self._run_pass(
            account_id, "incremental", cancel, on_progress,
            lambda session: self._incremental_sync_pass(session, cursor, on_progress),
        )

    async def _run_pass(
        self,
        account_id: str,
        mode: str,
        cancel: Optional[CancellationToken],
        on_progress: Optional[ProgressCallback],
        body: Callable[[SyncSession], Awaitable[SyncResult]],
    ) -> SyncResult:
        tag = f"[{mode.upper()} SYNC]"
        try:
            session = await self.registry.register(account_id, mode, self.store, cancel)
        except SyncAlreadyRunningError as e:
            logger.info(f"{tag} Skipping account {account_id}: {e}")
            return SyncResult.of(SyncStatus.ALREADY_RUNNING, False, error=str(e))
        except StoreError as e:
            logger.error(f"{tag} Could not read sync state for account {account_id}: {e}")
            return SyncResult.of(SyncStatus.TEMPORARILY_UNAVAILABLE, False, error=str(e))

        logger.info(f"{tag} Starting for account {account_id}")
        try:
            await self.store.set_in_progress(account_id, True)
            result = await body(session)
        except SyncCancelledError:
            logger.info(f"{tag} Cancelled for account {account_id}, partial progress kept")
            result = SyncResult.of(SyncStatus.CANCELLED, False)
        except AccountNotLinkedError as e:
            logger.warning(f"{tag} No linked account {account_id}: {e}")
            result = SyncResult.of(SyncStatus.NO_ACCOUNT, False, error=str(e))
        except AuthenticationFailedError as e:
            logger.warning(f"{tag} Authentication failed for account {account_id}: {e}")
            result = SyncResult.of(SyncStatus.RECONNECT_REQUIRED, False, error=str(e))
        except SyncError as e:
            logger.error(f"{tag} Failed for account {account_id}: {e}")
            result = SyncResult.of(SyncStatus.TEMPORARILY_UNAVAILABLE, False, error=str(e))
        except Exception as e:
            logger.exception(f"{tag} Unexpected error for account {account_id}: {e}")
            result = SyncResult.of(SyncStatus.TEMPORARILY_UNAVAILABLE, False, error=str(e))
        finally:
            try:
                await self.store.set_in_progress(account_id, False)
            except Exception as e:
                logger.error(f"{tag} Could not clear in-progress flag for account {account_id}: {e}")
            self.registry.unregister(account_id)

        if result.success:
            logger.info(f"{tag} Completed for account {account_id}: {result.counts.model_dump()}")
            await self._emit(on_progress, SyncProgressEvent(type="complete", message=result.message, result=result))
        elif result.status == SyncStatus.CANCELLED:
            await self._emit(on_progress, SyncProgressEvent(type="cancelled", message=result.message, result=result))
        else:
            await self._emit(on_progress, SyncProgressEvent(type="error", message=result.message, result=result))
        return result

    async def _full_sync_pass(self, session: SyncSession, on_progress: Optional[ProgressCallback]) -> SyncResult:
        account_id = session.account_id
        connection = await self.connector(account_id)

        refs = await self._collect_message_refs(connection, session.token)
        logger.info(f"[FULL SYNC] Listed {len(refs)} messages for account {account_id}")
        await self._emit(on_progress, SyncProgressEvent(
            type="init", message=f"Found {len(refs)} messages", total=len(refs),
        ))

        counts = ChangeCounts()
        counts.stubs_created = await self.persist_stubs(account_id, refs, session.token)
        logger.info(f"[FULL SYNC] Stored {counts.stubs_created} new stubs for account {account_id}")

        # listing order is newest first, so the head of the list is the recent subset
        backfill_ids = [ref.id for ref in refs[:self.options.backfill_limit]]
        existing = await self.store.existing_email_ids(account_id, backfill_ids)
        to_fetch = [msg_id for msg_id in backfill_ids if msg_id not in existing]
        logger.info(f"[FULL SYNC] Backfill: {len(backfill_ids)} recent, {len(existing)} already stored, {len(to_fetch)} to fetch")

        counts.fetched, counts.failed = await self._fetch_and_store(account_id, connection, to_fetch, session, on_progress)
        session.token.raise_if_cancelled()

        cursor = await self._remote(connection, connection.client.get_current_cursor)
        await self.store.set_cursor(account_id, cursor)
        return SyncResult.of(SyncStatus.OK, True, cursor=cursor, counts=counts)

    async def _collect_message_refs(self, connection: MailboxConnection, token: CancellationToken) -> List[MessageRef]:
        """Page through the whole listing. Any page failure aborts the pass."""
        refs: Dict[str, MessageRef] = {}
        page_token: Optional[str] = None
        pages = 0
        while True:
            token.raise_if_cancelled()
            page = await self._remote(
                connection,
                partial(connection.client.list_messages, page_token, self.options.list_page_size),
            )
            pages += 1
            for ref in page.items:
                refs.setdefault(ref.id, ref)
            logger.debug(f"[FULL SYNC] Page {pages}: {len(page.items)} messages, {len(refs)} total")
            page_token = page.next_page_token
            if not page_token:
                break
        return list(refs.values())

    async def persist_stubs(
        self,
        account_id: str,
        refs: Sequence[MessageRef],
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Bulk-create stubs in batches, skipping ids that already have one."""
        created = 0
        for batch in _chunks(list(refs), self.options.stub_batch_size):
            if token is not None:
                token.raise_if_cancelled()
            existing = await self.store.existing_stub_ids(account_id, [ref.id for ref in batch])
            new_stubs: Dict[str, MessageStub] = {}
            for ref in batch:
                if ref.id in existing or ref.id in new_stubs:
                    continue
                new_stubs[ref.id] = MessageStub(account_id=account_id, message_id=ref.id, thread_id=ref.thread_id)
            if new_stubs:
                created += await self.store.insert_stubs(list(new_stubs.values()))
        return created

    async def _incremental_sync_pass(
        self,
        session: SyncSession,
        cursor: str,
        on_progress: Optional[ProgressCallback],
    ) -> SyncResult:
        account_id = session.account_id
        connection = await self.connector(account_id)

        try:
            page = await self._remote(
                connection,
                partial(connection.client.get_changes_since, cursor, self.options.history_max_results),
            )
        except CursorNotFoundError as e:
            logger.warning(f"[INCREMENTAL SYNC] Cursor {cursor} invalid for account {account_id}, resetting: {e}")
            await self.store.clear_cursor(account_id)
            return SyncResult.of(SyncStatus.HISTORY_RESET, True, cursor=None)

        await self._emit(on_progress, SyncProgressEvent(
            type="init", message=f"Found {len(page.events)} changes", total=len(page.events),
        ))
        counts = await self.apply_changes(account_id, page, connection=connection, session=session, on_progress=on_progress)
        session.token.raise_if_cancelled()

        new_cursor = page.new_cursor_token or cursor
        await self.store.set_cursor(account_id, new_cursor)
        return SyncResult.of(SyncStatus.OK, True, cursor=new_cursor, counts=counts)

    async def apply_changes(
        self,
        account_id: str,
        page: ChangePage,
        connection: Optional[MailboxConnection] = None,
        session: Optional[SyncSession] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChangeCounts:
        """Apply one change-feed page: new ids, label deltas, then deletions."""
        if connection is None:
            connection = await self.connector(account_id)
        if session is None:
            session = SyncSession(account_id=account_id, mode="incremental")
        token = session.token

        plan = partition_events(page.events)
        counts = ChangeCounts(added=len(plan.added), deleted=len(plan.deleted))
        logger.info(
            f"[INCREMENTAL SYNC] Account {account_id}: {len(plan.added)} added, {len(plan.deleted)} deleted, "
            f"{len(plan.labels_added)} with labels added, {len(plan.labels_removed)} with labels removed"
        )

        candidates = list(dict.fromkeys(plan.added + plan.label_changed))
        counts.stubs_created = await self.persist_stubs(
            account_id,
            [MessageRef(id=msg_id, thread_id=plan.thread_ids.get(msg_id, "")) for msg_id in candidates],
            token,
        )

        existing = await self.store.existing_email_ids(account_id, candidates)
        to_fetch = [msg_id for msg_id in candidates if msg_id not in existing]
        counts.fetched, counts.failed = await self._fetch_and_store(account_id, connection, to_fetch, session, on_progress)

        # freshly fetched records already carry their current labels
        for msg_id in plan.label_changed:
            if msg_id not in existing:
                continue
            token.raise_if_cancelled()
            added = plan.labels_added.get(msg_id, set())
            removed = plan.labels_removed.get(msg_id, set())
            if await self.store.apply_label_delta(account_id, msg_id, added, removed):
                counts.labels_added += 1 if added else 0
                counts.labels_removed += 1 if removed else 0

        if plan.deleted:
            token.raise_if_cancelled()
            await self.store.delete_messages(account_id, plan.deleted)
        return counts

    async def _fetch_and_store(
        self,
        account_id: str,
        connection: MailboxConnection,
        message_ids: Sequence[str],
        session: SyncSession,
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[int, int]:
        """Fetch full content in bounded batches and create missing records.

        A single message failing is logged and skipped, it stays a stub.
        Store failures and terminal auth failures abort the pass.
        """
        if not message_ids:
            return 0, 0
        session.total = len(message_ids)
        fetched = 0
        failed = 0

        async def fetch_one(message_id: str) -> bool:
            message = await connection.auth.call(partial(connection.client.get_message, message_id))
            if message is None:
                raise RemoteApiError(f"No content returned for message {message_id}")
            record = EmailRecord.from_remote(account_id, message)
            created = await self.store.create_email(record)
            if created:
                await self._enrich(account_id, record)
            return created

        async def before_batch(index: int, total: int, batch: Sequence[str]) -> None:
            await self._emit(on_progress, SyncProgressEvent(
                type="batch-start", batch=index + 1, batches=total, total=session.total, processed=session.processed,
            ))

        async def after_batch(index: int, total: int, batch: Sequence[str], results: List[Any]) -> None:
            nonlocal fetched, failed
            for message_id, outcome in zip(batch, results):
                if isinstance(outcome, (StoreError, AuthenticationFailedError)):
                    raise outcome
                if isinstance(outcome, BaseException):
                    failed += 1
                    logger.warning(f"[SYNC] Skipping message {message_id} for account {account_id}: {outcome}")
                else:
                    fetched += 1
            session.advance(len(batch))
            logger.info(f"[SYNC] Processed batch {index + 1}/{total} for account {account_id}")
            await self._emit(on_progress, SyncProgressEvent(
                type="batch-complete", batch=index + 1, batches=total, total=session.total, processed=session.processed,
            ))
            await self._emit(on_progress, SyncProgressEvent(
                type="progress", total=session.total, processed=session.processed,
            ))

        await run_in_batches(
            list(message_ids),
            self.options.fetch_batch_size,
            fetch_one,
            token=session.token,
            before_batch=before_batch,
            after_batch=after_batch,
        )
        return fetched, failed

    async def _remote(self, connection: MailboxConnection, operation: Callable[[], Awaitable[Any]]) -> Any:
        result = await call_with_auth_retries(connection.auth, operation, attempts=self.options.auth_retries)
        if result is None:
            raise RemoteApiError("Remote call returned no result")
        return result

    async def _enrich(self, account_id: str, record: EmailRecord) -> None:
        if not self.enrichment_hook:
            return
        try:
            await self.enrichment_hook(account_id, record)
        except Exception as e:
            logger.warning(f"[SYNC] Enrichment failed for message {record.message_id}: {e}")

    async def _emit(self, on_progress: Optional[ProgressCallback], event: SyncProgressEvent) -> None:
        if not on_progress:
            return
        try:
            await on_progress(event)
        except Exception as e:
            logger.warning(f"[SYNC] Progress listener failed on {event.type} event: {e}")
