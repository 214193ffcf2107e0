import asyncio
import json
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from conftest import ACCOUNT_ID, gmail_message
from mailbuddy.api.sync.errors import StoreError, SyncAlreadyRunningError
from mailbuddy.api.sync.models import EmailRecord, LinkedAccount, SyncCursor, utcnow
from mailbuddy.api.sync.registry import SyncSession, SyncSessionRegistry
from mailbuddy.api.sync.store import MongoSyncStore, is_sync_flag_active
from mailbuddy.utils.security import configure_cipher, decrypt_text, encrypt_text


class TestRegistry:
    async def test_register_and_unregister(self):
        registry = SyncSessionRegistry()
        session = await registry.register(ACCOUNT_ID, "full")

        assert ACCOUNT_ID in registry
        assert registry.get(ACCOUNT_ID) is session
        with pytest.raises(SyncAlreadyRunningError):
            await registry.register(ACCOUNT_ID, "incremental")

        registry.unregister(ACCOUNT_ID)
        assert ACCOUNT_ID not in registry

    async def test_store_failure_releases_slot(self, store):
        registry = SyncSessionRegistry()
        store.failures["get_cursor"] = StoreError("get_cursor failed")

        with pytest.raises(StoreError):
            await registry.register(ACCOUNT_ID, "full", store)
        assert ACCOUNT_ID not in registry

    async def test_cancel_marks_token(self):
        registry = SyncSessionRegistry()
        assert registry.cancel(ACCOUNT_ID) is False

        session = await registry.register(ACCOUNT_ID, "full")
        assert registry.cancel(ACCOUNT_ID) is True
        assert session.token.cancelled

    def test_snapshot_reports_progress(self):
        session = SyncSession(account_id=ACCOUNT_ID, mode="full", total=200)
        session.started_at = utcnow() - timedelta(seconds=10)
        session.advance(50)

        snapshot = session.snapshot()

        assert snapshot["inProgress"] is True
        assert snapshot["progress"] == 25
        assert snapshot["remainingMessages"] == 150
        assert snapshot["messagesPerSecond"] == pytest.approx(5.0, rel=0.2)


def test_flag_staleness_window():
    fresh = SyncCursor(account_id=ACCOUNT_ID, sync_in_progress=True, sync_started_at=utcnow())
    stale = SyncCursor(account_id=ACCOUNT_ID, sync_in_progress=True, sync_started_at=utcnow() - timedelta(hours=1))
    naive = SyncCursor(account_id=ACCOUNT_ID, sync_in_progress=True, sync_started_at=utcnow().replace(tzinfo=None))

    assert is_sync_flag_active(fresh)
    assert not is_sync_flag_active(stale)
    assert is_sync_flag_active(naive)
    assert not is_sync_flag_active(SyncCursor(account_id=ACCOUNT_ID))
    assert not is_sync_flag_active(None)


def test_sensitive_fields_are_encrypted_at_rest():
    configure_cipher(Fernet.generate_key().decode())
    store = MongoSyncStore.__new__(MongoSyncStore)
    record = EmailRecord.from_remote(ACCOUNT_ID, gmail_message("m1", subject="Quarterly numbers", text="secret body"))

    doc = store._encrypt_record(record)

    assert doc["subject"] != "Quarterly numbers"
    assert doc["body"] != "secret body"
    assert doc["message_id"] == "m1"
    restored = store._decrypt_doc({"_id": "x", **doc})
    assert restored.subject == "Quarterly numbers"
    assert restored.body == "secret body"

    assert encrypt_text(None) is None
    with pytest.raises(ValueError):
        decrypt_text("not-a-fernet-token")


class TestMailSyncService:
    async def test_status_before_first_sync(self, service):
        status = await service.get_status(ACCOUNT_ID)

        assert status["inProgress"] is False
        assert status["needsInitialSync"] is True
        assert status["cursor"] is None
        assert status["storedMessages"] == 0

    async def test_status_after_sync(self, service, client):
        client.add_listing(["m1", "m2"])
        await service.sync_account(ACCOUNT_ID)

        status = await service.get_status(ACCOUNT_ID)

        assert status["needsInitialSync"] is False
        assert status["cursor"] == client.current_cursor
        assert status["storedMessages"] == 2
        assert status["lastSyncAt"] is not None

    async def test_status_while_running(self, service, registry):
        await registry.register(ACCOUNT_ID, "full")

        status = await service.get_status(ACCOUNT_ID)

        assert status["inProgress"] is True
        assert status["mode"] == "full"

    async def test_stream_full_sync_emits_ndjson(self, service, client):
        client.add_listing(["m1", "m2", "m3"])

        lines = [line async for line in service.stream_full_sync(ACCOUNT_ID)]
        events = [json.loads(line) for line in lines]

        assert all(line.endswith("\n") for line in lines)
        assert events[0]["type"] == "init"
        assert events[0]["total"] == 3
        assert events[-1]["type"] == "complete"
        assert events[-1]["result"]["status"] == "ok"
        assert events[-1]["result"]["counts"]["fetched"] == 3

    async def test_stream_reports_rejected_pass(self, service, registry):
        await registry.register(ACCOUNT_ID, "incremental")

        events = [json.loads(line) async for line in service.stream_full_sync(ACCOUNT_ID)]

        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert events[0]["result"]["status"] == "already_running"

    async def test_sync_all_accounts_isolates_failures(self, service, store, client):
        store.accounts["acct-2"] = LinkedAccount(account_id="acct-2", access_token="token-1", refresh_token="refresh-2")
        client.add_listing(["m1"])
        real_sync = service.sync_account

        async def flaky(account_id):
            if account_id == "acct-2":
                raise RuntimeError("connection reset")
            return await real_sync(account_id)

        service.sync_account = flaky
        summary = await service.sync_all_accounts()

        assert summary == {"total": 2, "succeeded": 1, "failed": 1, "skipped": 0}
        assert (await store.get_cursor(ACCOUNT_ID)).cursor == client.current_cursor

    async def test_closing_stream_cancels_and_collects_pass(self, service, client, store, registry):
        client.add_listing([f"m{i}" for i in range(120)])
        stream = service.stream_full_sync(ACCOUNT_ID)

        first = json.loads(await stream.__anext__())
        await stream.aclose()
        for _ in range(200):
            if not service._detached_passes:
                break
            await asyncio.sleep(0.01)

        assert first["type"] == "init"
        assert not service._detached_passes
        assert ACCOUNT_ID not in registry
        assert store.states[ACCOUNT_ID].sync_in_progress is False
