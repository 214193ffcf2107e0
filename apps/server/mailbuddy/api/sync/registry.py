"""Process-wide registry of running sync passes.

Passes register on start and unregister when they reach a terminal state. The
registry also consults the store's advisory in-progress flag so a pass started
by another instance is visible here.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from mailbuddy.api.sync.errors import SyncAlreadyRunningError, SyncCancelledError
from mailbuddy.api.sync.models import utcnow
from mailbuddy.api.sync.store import STALE_SYNC_AFTER, SyncStore, is_sync_flag_active

logger = logging.getLogger(__name__)


class CancellationToken:
    """Checkpoint-style cancellation: in-flight calls finish, nothing new starts."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise SyncCancelledError("Sync cancelled")


@dataclass
class SyncSession:
    account_id: str
    mode: str
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime = field(default_factory=utcnow)
    last_update: datetime = field(default_factory=utcnow)
    total: int = 0
    processed: int = 0

    def advance(self, count: int = 1) -> None:
        self.processed += count
        self.last_update = utcnow()

    def snapshot(self) -> dict:
        elapsed = max(0, int((utcnow() - self.started_at).total_seconds()))
        progress = min(100, int(self.processed * 100 / self.total)) if self.total > 0 else 0
        rate = self.processed / elapsed if elapsed > 0 else 0.0
        remaining = max(0, self.total - self.processed)
        return {
            "inProgress": True,
            "mode": self.mode,
            "startTime": self.started_at.isoformat(),
            "lastUpdateTime": self.last_update.isoformat(),
            "elapsedSeconds": elapsed,
            "totalMessages": self.total,
            "processedMessages": self.processed,
            "remainingMessages": remaining,
            "progress": progress,
            "messagesPerSecond": round(rate, 2),
            "estimatedSecondsRemaining": int(remaining / rate) if rate > 0 else 0,
        }


class SyncSessionRegistry:
    def __init__(self, stale_after: timedelta = STALE_SYNC_AFTER):
        self._sessions: Dict[str, SyncSession] = {}
        self.stale_after = stale_after

    async def register(
        self,
        account_id: str,
        mode: str,
        store: Optional[SyncStore] = None,
        token: Optional[CancellationToken] = None,
    ) -> SyncSession:
        if account_id in self._sessions:
            raise SyncAlreadyRunningError(f"Sync already running for account {account_id}")
        # claim the slot before awaiting the store so concurrent callers see it
        session = SyncSession(account_id=account_id, mode=mode, token=token or CancellationToken())
        self._sessions[account_id] = session
        if store is not None:
            try:
                state = await store.get_cursor(account_id)
            except Exception:
                self._sessions.pop(account_id, None)
                raise
            if is_sync_flag_active(state, self.stale_after):
                self._sessions.pop(account_id, None)
                raise SyncAlreadyRunningError(f"Sync flagged in progress for account {account_id}")
        logger.debug(f"[SYNC REGISTRY] Registered {mode} sync for account {account_id}")
        return session

    def unregister(self, account_id: str) -> None:
        if self._sessions.pop(account_id, None) is not None:
            logger.debug(f"[SYNC REGISTRY] Cleaned up sync for account {account_id}")

    def get(self, account_id: str) -> Optional[SyncSession]:
        return self._sessions.get(account_id)

    def cancel(self, account_id: str) -> bool:
        session = self._sessions.get(account_id)
        if not session:
            return False
        session.token.cancel()
        logger.info(f"[SYNC REGISTRY] Cancellation requested for account {account_id}")
        return True

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._sessions


registry = SyncSessionRegistry()
