import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, Set

from pymongo.asynchronous.database import AsyncDatabase

from mailbuddy.api.sync.engine import EnrichmentHook, MailboxConnection, SyncEngine, SyncOptions
from mailbuddy.api.sync.errors import AccountNotLinkedError
from mailbuddy.api.sync.gmail_client import GmailMailboxClient, MailboxClient
from mailbuddy.api.sync.models import SyncProgressEvent, SyncResult, SyncStatus
from mailbuddy.api.sync.registry import CancellationToken, SyncSessionRegistry, registry as default_registry
from mailbuddy.api.sync.retry import AuthRetryWrapper
from mailbuddy.api.sync.store import MongoSyncStore, SyncStore, is_sync_flag_active
from mailbuddy.api.sync.token_provider import GoogleTokenProvider, TokenProvider
from mailbuddy.config import settings

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("complete", "error", "cancelled")

ClientFactory = Callable[[Callable[[], Optional[str]]], MailboxClient]


def default_client_factory(access_token_getter: Callable[[], Optional[str]]) -> MailboxClient:
    return GmailMailboxClient(
        access_token_getter,
        transient_retries=settings.MAIL_SYNC_TRANSIENT_RETRIES,
        request_timeout=settings.MAIL_SYNC_REQUEST_TIMEOUT_SECONDS,
    )


class MailSyncService:
    """Wires stored accounts, Gmail access and the sync engine together."""

    def __init__(
        self,
        db: Optional[AsyncDatabase] = None,
        store: Optional[SyncStore] = None,
        token_provider: Optional[TokenProvider] = None,
        client_factory: Optional[ClientFactory] = None,
        registry: Optional[SyncSessionRegistry] = None,
        options: Optional[SyncOptions] = None,
        enrichment_hook: Optional[EnrichmentHook] = None,
    ):
        if store is None:
            if db is None:
                raise ValueError("MailSyncService needs a database or a store")
            store = MongoSyncStore(db, batch_size=settings.MAIL_SYNC_STUB_BATCH_SIZE)
        self.store = store
        self.token_provider = token_provider or GoogleTokenProvider()
        self.client_factory = client_factory or default_client_factory
        self.registry = registry or default_registry
        # full sync tasks still winding down after their stream was closed
        self._detached_passes: Set[asyncio.Task] = set()
        self.engine = SyncEngine(
            self.store,
            self.connect,
            registry=self.registry,
            options=options or SyncOptions.from_settings(settings),
            enrichment_hook=enrichment_hook,
        )

    async def connect(self, account_id: str) -> MailboxConnection:
        """Build an authenticated mailbox connection for a linked account."""
        account = await self.store.get_linked_account(account_id)
        if not account:
            raise AccountNotLinkedError(f"Account {account_id} has no linked Google credentials")
        auth = AuthRetryWrapper(account, self.token_provider, on_refreshed=self.store.save_access_token)
        client = self.client_factory(lambda: auth.access_token)
        return MailboxConnection(client=client, auth=auth)

    async def sync_account(self, account_id: str) -> SyncResult:
        return await self.engine.sync(account_id)

    async def full_sync_account(self, account_id: str, cancel: Optional[CancellationToken] = None, on_progress=None) -> SyncResult:
        return await self.engine.full_sync(account_id, cancel=cancel, on_progress=on_progress)

    def is_running(self, account_id: str) -> bool:
        return account_id in self.registry

    def cancel_sync(self, account_id: str) -> bool:
        return self.registry.cancel(account_id)

    async def get_status(self, account_id: str) -> dict:
        """Live progress of a running pass, or the stored sync state otherwise."""
        state = await self.store.get_cursor(account_id)
        session = self.registry.get(account_id)
        if session:
            status = session.snapshot()
        else:
            status = {
                "inProgress": is_sync_flag_active(state, self.registry.stale_after),
                "mode": None,
            }
        status["cursor"] = state.cursor if state else None
        status["lastSyncAt"] = state.last_sync_at.isoformat() if state and state.last_sync_at else None
        status["needsInitialSync"] = not (state and state.cursor)
        status["storedMessages"] = await self.store.count_stubs(account_id)
        return status

    async def stream_full_sync(self, account_id: str) -> AsyncIterator[str]:
        """Run a full sync and yield its progress as NDJSON lines.

        Closing the stream early cancels the pass at its next checkpoint.
        """
        queue: asyncio.Queue = asyncio.Queue()
        token = CancellationToken()

        async def on_progress(event: SyncProgressEvent) -> None:
            await queue.put(event)

        task = asyncio.create_task(self.engine.full_sync(account_id, cancel=token, on_progress=on_progress))
        terminal_sent = False
        collected = False
        try:
            while not (task.done() and queue.empty()):
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                terminal_sent = terminal_sent or event.type in TERMINAL_EVENTS
                yield event.to_ndjson()

            result = task.result()
            collected = True
            if not terminal_sent:
                event_type = "complete" if result.success else "error"
                yield SyncProgressEvent(type=event_type, message=result.message, result=result).to_ndjson()
        finally:
            if not collected:
                if not task.done():
                    logger.info(f"[FULL SYNC] Progress stream closed for account {account_id}, cancelling")
                    token.cancel()
                self._detached_passes.add(task)
                task.add_done_callback(lambda done: self._collect_detached_pass(account_id, done))

    def _collect_detached_pass(self, account_id: str, task: asyncio.Task) -> None:
        self._detached_passes.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[FULL SYNC] Detached pass for account {account_id} failed: {error}")
            return
        result = task.result()
        logger.info(f"[FULL SYNC] Detached pass for account {account_id} ended: {result.status.value}")

    async def sync_all_accounts(self) -> dict:
        """Sync linked accounts, least recently synced first. One failure never stops the run."""
        account_ids = await self.store.list_accounts_to_sync(settings.MAIL_SYNC_MAX_ACCOUNTS_PER_RUN)
        logger.info(f"[SYNC ALL] Starting sync for {len(account_ids)} accounts")

        success_count = 0
        error_count = 0
        skipped_count = 0
        for account_id in account_ids:
            try:
                result = await self.sync_account(account_id)
            except Exception as e:
                error_count += 1
                logger.warning(f"[SYNC ALL] Exception syncing account {account_id}: {e}")
                continue

            if result.success:
                success_count += 1
                logger.info(f"[SYNC ALL] Synced account {account_id}: {result.status.value}")
            elif result.status == SyncStatus.ALREADY_RUNNING:
                skipped_count += 1
            else:
                error_count += 1
                logger.warning(f"[SYNC ALL] Failed to sync account {account_id}: {result.status.value} {result.error or ''}")

        logger.info(
            f"[SYNC ALL] Completed sync for {len(account_ids)} accounts: "
            f"{success_count} successful, {error_count} failed, {skipped_count} skipped"
        )
        return {
            "total": len(account_ids),
            "succeeded": success_count,
            "failed": error_count,
            "skipped": skipped_count,
        }
