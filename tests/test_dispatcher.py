"""Fragment dispatch and asynchronous outcome correlation."""

from __future__ import annotations

import asyncio
import base64
import time

import pytest

from storage_coordinator.errors import FragmentDispatchError, NoProviderAvailable, TransferNotFound
from storage_coordinator.models.messages import STORE_FILE, FileStored, StorageError
from storage_coordinator.models.records import TransferStatus
from storage_coordinator.transfers.dispatcher import FragmentDispatcher

from tests.conftest import register_provider
from tests.factories import PROVIDER_A, PROVIDER_B
from tests.mocks import FailingStore

CONTENT = b"fragment-bytes-0123456789"


def _stored(file_id: str, address: str = PROVIDER_A) -> FileStored:
    return FileStored(agreement_id=1, file_id=file_id, provider_address=address)


# ── Dispatch ──────────────────────────────────────────────────────


async def test_dispatch_sends_store_file(dispatcher, registry, store):
    _, channel = register_provider(registry, PROVIDER_A, connection_id="c1")

    result = await dispatcher.dispatch(CONTENT, "photo.jpg", agreement_id=1)

    assert result.status is TransferStatus.DISPATCHED
    assert result.provider_address == PROVIDER_A
    assert result.connection_id == "c1"
    assert len(result.file_id) == 32
    int(result.file_id, 16)

    payload = channel.last(STORE_FILE)
    assert payload["fileId"] == result.file_id
    assert payload["agreementId"] == 1
    assert payload["originalFileName"] == "photo.jpg"
    assert base64.b64decode(payload["encryptedFragment"]) == CONTENT

    transfer = await store.get_transfer(result.file_id)
    assert transfer.status is TransferStatus.DISPATCHED
    assert transfer.size_bytes == len(CONTENT)


async def test_file_ids_are_unique(dispatcher, registry):
    register_provider(registry)
    ids = {(await dispatcher.dispatch(CONTENT, "f", None)).file_id for _ in range(20)}
    assert len(ids) == 20


async def test_no_provider_has_no_side_effects(dispatcher, store):
    with pytest.raises(NoProviderAvailable):
        await dispatcher.dispatch(CONTENT, "photo.jpg", agreement_id=1)

    counts = await store.counts()
    assert counts.transfers == 0
    assert counts.activity == 0
    assert dispatcher.pending_count == 0


async def test_activity_write_failure_after_send_still_dispatches(registry):
    store = FailingStore(fail_offerings=False, fail_agreements=False, fail_activity=True)
    await store.initialize()
    try:
        dispatcher = FragmentDispatcher(registry, store)
        _, channel = register_provider(registry, PROVIDER_A, connection_id="c1")

        result = await dispatcher.dispatch(CONTENT, "f", None)

        assert result.status is TransferStatus.DISPATCHED
        assert channel.last(STORE_FILE)["fileId"] == result.file_id
        assert dispatcher.pending_count == 1
        assert (await store.get_transfer(result.file_id)).status is TransferStatus.DISPATCHED
    finally:
        await store.close()


async def test_zero_storage_provider_rejected_when_capacity_aware(dispatcher, registry):
    register_provider(registry, PROVIDER_A, available_storage=0)
    with pytest.raises(NoProviderAvailable):
        await dispatcher.dispatch(CONTENT, "f", None)


async def test_capacity_check_can_be_disabled(registry, store):
    register_provider(registry, PROVIDER_A, available_storage=0)
    dispatcher = FragmentDispatcher(registry, store, capacity_aware=False)
    result = await dispatcher.dispatch(CONTENT, "f", None)
    assert result.provider_address == PROVIDER_A


async def test_dispatch_prefers_agreement_provider(dispatcher, registry):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    _, channel_b = register_provider(registry, PROVIDER_B, connection_id="c2")

    result = await dispatcher.dispatch(CONTENT, "f", 7, preferred_provider=PROVIDER_B)
    assert result.connection_id == "c2"
    assert channel_b.sent


async def test_send_failure_marks_failed(dispatcher, registry, store):
    register_provider(registry, PROVIDER_A, fail=True)

    with pytest.raises(FragmentDispatchError):
        await dispatcher.dispatch(CONTENT, "f", None)

    transfers = await store.list_transfers()
    assert len(transfers) == 1
    assert transfers[0].status is TransferStatus.FAILED
    assert "send failed" in transfers[0].error
    assert dispatcher.pending_count == 0


# ── Acknowledgments ───────────────────────────────────────────────


async def test_file_stored_resolves_outcome(dispatcher, registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    result = await dispatcher.dispatch(CONTENT, "f", 1)

    waiter = asyncio.create_task(dispatcher.wait_for_outcome(result.file_id, timeout=2))
    await asyncio.sleep(0)
    await dispatcher.on_file_stored("c1", _stored(result.file_id))

    outcome = await waiter
    assert outcome.status is TransferStatus.STORED
    assert outcome.provider_address == PROVIDER_A
    assert (await store.get_transfer(result.file_id)).status is TransferStatus.STORED
    assert dispatcher.pending_count == 0


async def test_storage_error_marks_failed(dispatcher, registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    result = await dispatcher.dispatch(CONTENT, "f", 1)

    await dispatcher.on_storage_error(
        "c1",
        StorageError(agreement_id=1, file_id=result.file_id,
                     provider_address=PROVIDER_A, error="disk full"),
    )

    transfer = await dispatcher.get_status(result.file_id)
    assert transfer.status is TransferStatus.FAILED
    assert transfer.error == "disk full"
    outcome = await dispatcher.wait_for_outcome(result.file_id)
    assert outcome.status is TransferStatus.FAILED


async def test_ack_from_other_connection_ignored(dispatcher, registry):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    register_provider(registry, PROVIDER_B, connection_id="c2")
    result = await dispatcher.dispatch(CONTENT, "f", 1)

    await dispatcher.on_file_stored("c2", _stored(result.file_id, PROVIDER_B))
    assert (await dispatcher.get_status(result.file_id)).status is TransferStatus.DISPATCHED


async def test_ack_for_unknown_file_ignored(dispatcher, store):
    await dispatcher.on_file_stored("c1", _stored("0" * 32))
    assert (await store.counts()).transfers == 0


async def test_late_ack_after_terminal_ignored(dispatcher, registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    result = await dispatcher.dispatch(CONTENT, "f", 1)

    await dispatcher.on_storage_error(
        "c1",
        StorageError(agreement_id=1, file_id=result.file_id,
                     provider_address=PROVIDER_A, error="boom"),
    )
    await dispatcher.on_file_stored("c1", _stored(result.file_id))
    assert (await store.get_transfer(result.file_id)).status is TransferStatus.FAILED


async def test_disconnect_fails_pending(dispatcher, registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    register_provider(registry, PROVIDER_B, connection_id="c2")
    lost = await dispatcher.dispatch(CONTENT, "a", None)
    kept = await dispatcher.dispatch(CONTENT, "b", None, preferred_provider=PROVIDER_B)

    assert await dispatcher.on_provider_disconnected("c1") == 1

    assert (await store.get_transfer(lost.file_id)).status is TransferStatus.FAILED
    assert (await store.get_transfer(lost.file_id)).error == "provider disconnected"
    assert (await store.get_transfer(kept.file_id)).status is TransferStatus.DISPATCHED


# ── Timeouts ──────────────────────────────────────────────────────


async def test_expire_overdue_times_out(registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    dispatcher = FragmentDispatcher(registry, store, transfer_timeout=30.0)
    result = await dispatcher.dispatch(CONTENT, "f", None)

    assert await dispatcher.expire_overdue(now=time.monotonic()) == 0
    assert await dispatcher.expire_overdue(now=time.monotonic() + 31) == 1

    outcome = await dispatcher.wait_for_outcome(result.file_id)
    assert outcome.status is TransferStatus.TIMED_OUT
    assert "30s" in outcome.error

    # A late acknowledgment does not resurrect it
    await dispatcher.on_file_stored("c1", _stored(result.file_id))
    assert (await store.get_transfer(result.file_id)).status is TransferStatus.TIMED_OUT


async def test_recover_orphaned_times_out_previous_run(registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    before = FragmentDispatcher(registry, store)
    old = await before.dispatch(CONTENT, "old.txt", None)

    dispatcher = FragmentDispatcher(registry, store)
    assert await dispatcher.recover_orphaned() == 1

    transfer = await store.get_transfer(old.file_id)
    assert transfer.status is TransferStatus.TIMED_OUT
    assert "restarted" in transfer.error
    outcome = await dispatcher.wait_for_outcome(old.file_id)
    assert outcome.status is TransferStatus.TIMED_OUT
    activity = await store.get_recent_activity(10)
    assert any(
        a.event_type == "fragment_timed_out" and a.subject_id == old.file_id
        for a in activity
    )

    assert await dispatcher.recover_orphaned() == 0


async def test_recover_orphaned_leaves_own_pending(dispatcher, registry, store):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    result = await dispatcher.dispatch(CONTENT, "f", None)

    assert await dispatcher.recover_orphaned() == 0
    assert dispatcher.pending_count == 1
    assert (await store.get_transfer(result.file_id)).status is TransferStatus.DISPATCHED


async def test_wait_for_outcome_times_out_but_keeps_pending(dispatcher, registry):
    register_provider(registry, PROVIDER_A, connection_id="c1")
    result = await dispatcher.dispatch(CONTENT, "f", None)

    with pytest.raises(asyncio.TimeoutError):
        await dispatcher.wait_for_outcome(result.file_id, timeout=0.01)
    assert dispatcher.pending_count == 1


async def test_wait_for_unknown_file(dispatcher):
    with pytest.raises(TransferNotFound):
        await dispatcher.wait_for_outcome("f" * 32)
