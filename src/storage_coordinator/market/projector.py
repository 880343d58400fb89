"""Event projector - maps marketplace contract events onto the store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from storage_coordinator.errors import InvalidAgreementTerms
from storage_coordinator.interfaces.poller import ContractEvent
from storage_coordinator.interfaces.store import MarketStore
from storage_coordinator.models.events import (
    AgreementCancelled,
    AgreementCompleted,
    AgreementCreated,
    OfferingCreated,
    OfferingRemoved,
    OfferingUpdated,
    PaymentMade,
)
from storage_coordinator.models.records import AgreementRecord, OfferingRecord, PaymentRecord

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

R = TypeVar("R", OfferingRecord, AgreementRecord)


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def derive_price_per_gb_per_day(
    total_price: int, capacity: int, start_time: int, end_time: int
) -> float:
    """total_price / (capacity * duration in days).

    Raises InvalidAgreementTerms when capacity or duration is not positive.
    """
    duration_days = (end_time - start_time) / SECONDS_PER_DAY
    if capacity <= 0 or duration_days <= 0:
        raise InvalidAgreementTerms(
            f"capacity={capacity}, duration_days={duration_days:g}"
        )
    return total_price / (capacity * duration_days)


def _merge_fields(
    current: R, fields: dict[str, Any], position: tuple[int, int]
) -> tuple[R, bool]:
    """Apply event fields onto a stored record.

    An event at or after the stored position overwrites and advances the
    position. An older event only fills fields that are still unset.
    Returns (merged record, whether the event was newer).
    """
    newer = position >= current.position
    merged = replace(current)
    for name, value in fields.items():
        if value is None:
            continue
        if newer or getattr(merged, name) is None:
            setattr(merged, name, value)
    if newer:
        merged.ledger_sequence, merged.event_index = position
    return merged, newer


class EventProjector:
    """Projects contract events into the off-chain offering/agreement store.

    project() never raises: a failed handler is logged and the next event
    proceeds. Writes are serialized per record key, so concurrent delivery
    of events for the same offering or agreement cannot lose updates.
    """

    def __init__(self, store: MarketStore) -> None:
        self._store = store
        self._locks: dict[tuple[str, int], _KeyLock] = {}
        self._handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            OfferingCreated: self._on_offering_created,
            OfferingUpdated: self._on_offering_updated,
            OfferingRemoved: self._on_offering_removed,
            AgreementCreated: self._on_agreement_created,
            AgreementCancelled: self._on_agreement_cancelled,
            AgreementCompleted: self._on_agreement_completed,
            PaymentMade: self._on_payment_made,
        }

    @contextlib.asynccontextmanager
    async def _lock(self, kind: str, key: int) -> AsyncIterator[None]:
        """Hold the lock for one record key; dropped once nobody holds or awaits it."""
        entry = self._locks.get((kind, key))
        if entry is None:
            entry = self._locks[(kind, key)] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[(kind, key)]

    async def project(self, event: ContractEvent) -> bool:
        """Apply one event. Returns False if it was ignored or failed."""
        name = type(event).__name__
        handler = self._handlers.get(type(event))
        if handler is None:
            log.debug("Ignoring unsupported event %s", name)
            return False

        try:
            await handler(event)
            return True
        except Exception as exc:
            log.error("Error handling %s event: %s", name, exc, exc_info=True)
            try:
                await self._store.log_activity(
                    "projection_error", f"{name}: {exc}", subject_id=_subject_id(event),
                )
            except Exception as log_exc:
                log.warning("Could not record projection error: %s", log_exc)
            return False

    async def project_all(self, events: list[ContractEvent]) -> int:
        """Apply events in order. Returns how many were applied."""
        applied = 0
        for event in events:
            if await self.project(event):
                applied += 1
        return applied

    # ── Offerings ──────────────────────────────────────────

    async def _upsert_offering(
        self,
        offering_id: int,
        position: tuple[int, int],
        fields: dict[str, Any],
        is_available: bool | None,
    ) -> bool:
        """Read-merge-write one offering. Returns False if nothing changed."""
        async with self._lock("offering", offering_id):
            current = await self._store.get_offering(offering_id)
            if current is None:
                record = OfferingRecord(
                    offering_id=offering_id,
                    is_available=True if is_available is None else is_available,
                )
                record, _ = _merge_fields(record, fields, position)
            else:
                record, newer = _merge_fields(current, fields, position)
                if newer and is_available is not None:
                    record.is_available = is_available
                if record == current:
                    log.debug("Offering %d unchanged by event at %s", offering_id, position)
                    return False
            await self._store.save_offering(record)
            return True

    async def _on_offering_created(self, event: OfferingCreated) -> None:
        changed = await self._upsert_offering(
            event.offering_id,
            event.position,
            {
                "provider": event.provider,
                "capacity": event.capacity,
                "price_per_gb_per_day": event.price_per_gb_per_day,
            },
            is_available=True,
        )
        log.info(
            "Offering created with ID: %d by provider: %s", event.offering_id, event.provider,
        )
        if not changed:
            return
        await self._store.log_activity(
            "offering_created",
            f"Offering {event.offering_id}: {event.capacity} GB at "
            f"{event.price_per_gb_per_day}/GB/day",
            subject_id=event.offering_id,
        )

    async def _on_offering_updated(self, event: OfferingUpdated) -> None:
        changed = await self._upsert_offering(
            event.offering_id,
            event.position,
            {
                "provider": event.provider,
                "capacity": event.capacity,
                "price_per_gb_per_day": event.price_per_gb_per_day,
            },
            is_available=None,
        )
        log.info(
            "Offering updated with ID: %d by provider: %s", event.offering_id, event.provider,
        )
        if not changed:
            return
        await self._store.log_activity(
            "offering_updated",
            f"Offering {event.offering_id}: {event.capacity} GB at "
            f"{event.price_per_gb_per_day}/GB/day",
            subject_id=event.offering_id,
        )

    async def _on_offering_removed(self, event: OfferingRemoved) -> None:
        changed = await self._upsert_offering(
            event.offering_id,
            event.position,
            {"provider": event.provider},
            is_available=False,
        )
        log.info(
            "Offering removed with ID: %d by provider: %s", event.offering_id, event.provider,
        )
        if not changed:
            return
        await self._store.log_activity(
            "offering_removed",
            f"Offering {event.offering_id} withdrawn",
            subject_id=event.offering_id,
        )

    # ── Agreements ─────────────────────────────────────────

    async def _on_agreement_created(self, event: AgreementCreated) -> None:
        fields: dict[str, Any] = {
            "consumer": event.consumer,
            "provider": event.provider,
            "capacity": event.capacity,
            "total_price": event.total_price,
            "start_time": event.start_time,
            "end_time": event.end_time,
        }
        async with self._lock("agreement", event.agreement_id):
            current = await self._store.get_agreement(event.agreement_id)

            # The price is derived once, when creation data is first seen.
            if current is None or current.total_price is None:
                try:
                    fields["price_per_gb_per_day"] = derive_price_per_gb_per_day(
                        event.total_price, event.capacity, event.start_time, event.end_time,
                    )
                except InvalidAgreementTerms as exc:
                    log.warning(
                        "Invalid terms for agreement %d (%s); storing without a price",
                        event.agreement_id, exc,
                    )
                    await self._store.log_activity(
                        "invalid_agreement_terms",
                        f"Agreement {event.agreement_id}: {exc}",
                        subject_id=event.agreement_id,
                    )

            if current is None:
                record, _ = _merge_fields(
                    AgreementRecord(agreement_id=event.agreement_id), fields, event.position,
                )
            else:
                record, _ = _merge_fields(current, fields, event.position)
                record.is_active = current.is_active
                if record == current:
                    log.debug("Agreement %d unchanged (duplicate delivery)", event.agreement_id)
                    return
            await self._store.save_agreement(record)

        log.info("Agreement created with ID: %d", event.agreement_id)
        await self._store.log_activity(
            "agreement_created",
            f"Agreement {event.agreement_id}: {event.consumer} rents "
            f"{event.capacity} GB from {event.provider}",
            subject_id=event.agreement_id,
        )

    async def _deactivate_agreement(self, agreement_id: int, position: tuple[int, int]) -> bool:
        """Set is_active=False. Returns False if it was already inactive."""
        async with self._lock("agreement", agreement_id):
            current = await self._store.get_agreement(agreement_id)
            if current is None:
                record = AgreementRecord(
                    agreement_id=agreement_id,
                    is_active=False,
                    ledger_sequence=position[0],
                    event_index=position[1],
                )
            else:
                if not current.is_active:
                    return False
                record, _ = _merge_fields(current, {}, position)
                record.is_active = False
            await self._store.save_agreement(record)
            return True

    async def _on_agreement_cancelled(self, event: AgreementCancelled) -> None:
        changed = await self._deactivate_agreement(event.agreement_id, event.position)
        log.info("Agreement cancelled with ID: %d", event.agreement_id)
        if changed:
            await self._store.log_activity(
                "agreement_cancelled",
                f"Agreement {event.agreement_id} cancelled",
                subject_id=event.agreement_id,
            )

    async def _on_agreement_completed(self, event: AgreementCompleted) -> None:
        changed = await self._deactivate_agreement(event.agreement_id, event.position)
        log.info("Agreement completed with ID: %d", event.agreement_id)
        if changed:
            await self._store.log_activity(
                "agreement_completed",
                f"Agreement {event.agreement_id} completed",
                subject_id=event.agreement_id,
            )

    # ── Payments ───────────────────────────────────────────

    async def _on_payment_made(self, event: PaymentMade) -> None:
        inserted = await self._store.save_payment(
            PaymentRecord(
                agreement_id=event.agreement_id,
                amount=event.amount,
                ledger_sequence=event.ledger_sequence,
                event_index=event.event_index,
            )
        )
        if not inserted:
            log.debug("Payment for agreement %d already recorded", event.agreement_id)
            return
        log.info("Payment made for Agreement ID: %d, Amount: %d", event.agreement_id, event.amount)
        await self._store.log_activity(
            "payment_made",
            f"Payment of {event.amount} for agreement {event.agreement_id}",
            subject_id=event.agreement_id,
        )


def _subject_id(event: object) -> int | None:
    for attr in ("offering_id", "agreement_id"):
        value = getattr(event, attr, None)
        if value is not None:
            return value
    return None
