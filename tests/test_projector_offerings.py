"""Offering projection: create/update/remove, ordering, duplicates, failures."""

from __future__ import annotations

import asyncio

from storage_coordinator.market.projector import EventProjector

from tests.factories import (
    PROVIDER_A,
    PROVIDER_B,
    make_offering_created,
    make_offering_removed,
    make_offering_updated,
)
from tests.mocks import FailingStore


async def _activity_types(store) -> list[str]:
    return [a.event_type for a in await store.get_recent_activity(100)]


# ── Happy path ────────────────────────────────────────────────────


async def test_offering_created_is_stored_available(projector, store):
    assert await projector.project(make_offering_created(offering_id=1, capacity=100))

    offering = await store.get_offering(1)
    assert offering is not None
    assert offering.provider == PROVIDER_A
    assert offering.capacity == 100
    assert offering.price_per_gb_per_day == 10
    assert offering.is_available is True
    assert offering.position == (1000, 0)
    assert "offering_created" in await _activity_types(store)


async def test_offering_updated_overwrites_terms(projector, store):
    await projector.project(make_offering_created(offering_id=1))
    await projector.project(
        make_offering_updated(offering_id=1, capacity=250, price_per_gb_per_day=7)
    )

    offering = await store.get_offering(1)
    assert offering.capacity == 250
    assert offering.price_per_gb_per_day == 7
    assert offering.is_available is True
    assert offering.ledger_sequence == 1001


async def test_offering_removed_is_soft_delete(projector, store):
    await projector.project(make_offering_created(offering_id=1))
    await projector.project(make_offering_removed(offering_id=1))

    offering = await store.get_offering(1)
    assert offering is not None
    assert offering.is_available is False
    # Terms survive the withdrawal
    assert offering.capacity == 100
    assert await store.list_offerings(available=True) == []


# ── Out-of-order delivery ─────────────────────────────────────────


async def test_update_before_create_creates_partial_then_fills(projector, store):
    """Update (newer) arrives first; the older create only fills gaps."""
    await projector.project(
        make_offering_updated(offering_id=5, capacity=300, ledger_sequence=1010)
    )
    partial = await store.get_offering(5)
    assert partial.is_available is True
    assert partial.capacity == 300

    await projector.project(
        make_offering_created(offering_id=5, capacity=100, ledger_sequence=1000)
    )
    offering = await store.get_offering(5)
    assert offering.capacity == 300  # newer value kept
    assert offering.ledger_sequence == 1010


async def test_remove_before_create_stays_unavailable(projector, store):
    await projector.project(make_offering_removed(offering_id=6, ledger_sequence=1020))
    partial = await store.get_offering(6)
    assert partial.is_available is False
    assert partial.capacity is None

    await projector.project(
        make_offering_created(offering_id=6, capacity=40, ledger_sequence=1000)
    )
    offering = await store.get_offering(6)
    assert offering.is_available is False
    assert offering.capacity == 40
    assert offering.price_per_gb_per_day == 10


async def test_event_index_orders_events_in_same_ledger(projector, store):
    await projector.project(
        make_offering_updated(offering_id=7, capacity=2, ledger_sequence=1000, event_index=2)
    )
    await projector.project(
        make_offering_updated(offering_id=7, capacity=1, ledger_sequence=1000, event_index=1)
    )
    offering = await store.get_offering(7)
    assert offering.capacity == 2
    assert offering.event_index == 2


# ── Idempotency ───────────────────────────────────────────────────


async def test_duplicate_delivery_is_noop(projector, store):
    event = make_offering_created(offering_id=1)
    await projector.project(event)
    first = await store.get_offering(1)

    await projector.project(event)
    second = await store.get_offering(1)

    assert second == first
    assert (await _activity_types(store)).count("offering_created") == 1


async def test_remove_twice_logs_once(projector, store):
    await projector.project(make_offering_created(offering_id=1))
    await projector.project(make_offering_removed(offering_id=1))
    await projector.project(make_offering_removed(offering_id=1))
    assert (await _activity_types(store)).count("offering_removed") == 1


async def test_concurrent_updates_keep_latest(projector, store):
    """Interleaved handlers for the same offering never lose the newest event."""
    events = [
        make_offering_updated(offering_id=9, capacity=c, ledger_sequence=1000 + c)
        for c in range(1, 21)
    ]
    results = await asyncio.gather(*(projector.project(e) for e in reversed(events)))
    assert all(results)

    offering = await store.get_offering(9)
    assert offering.capacity == 20
    assert offering.ledger_sequence == 1020
    assert projector._locks == {}


async def test_key_locks_do_not_accumulate(projector, store):
    await projector.project_all(
        [make_offering_created(offering_id=i, ledger_sequence=1000 + i) for i in range(50)]
    )
    assert projector._locks == {}
    assert len(await store.list_offerings()) == 50


async def test_different_providers_are_independent(projector, store):
    await projector.project_all([
        make_offering_created(offering_id=1, provider=PROVIDER_A),
        make_offering_created(offering_id=2, provider=PROVIDER_B, ledger_sequence=1001),
    ])
    assert [o.offering_id for o in await store.list_offerings(provider=PROVIDER_B)] == [2]


# ── Failures ──────────────────────────────────────────────────────


async def test_store_failure_is_logged_not_raised():
    store = FailingStore()
    await store.initialize()
    try:
        projector = EventProjector(store)
        assert await projector.project(make_offering_created(offering_id=3)) is False

        activity = await store.get_recent_activity(10)
        assert [a.event_type for a in activity] == ["projection_error"]
        assert activity[0].subject_id == "3"

        # Subsequent events are still processed
        store.fail_offerings = False
        assert await projector.project(make_offering_created(offering_id=4))
        assert await store.get_offering(4) is not None
    finally:
        await store.close()


async def test_unknown_event_is_ignored(projector, store):
    assert await projector.project(object()) is False
    assert await store.get_recent_activity(10) == []


async def test_project_all_counts_applied(projector):
    applied = await projector.project_all([
        make_offering_created(offering_id=1),
        object(),
        make_offering_removed(offering_id=1),
    ])
    assert applied == 2
