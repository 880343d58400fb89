"""EventPoller protocol - polls the chain for marketplace contract events."""

from __future__ import annotations

from typing import Protocol, Union

from storage_coordinator.models.events import (
    AgreementCancelled,
    AgreementCompleted,
    AgreementCreated,
    OfferingCreated,
    OfferingRemoved,
    OfferingUpdated,
    PaymentMade,
)

ContractEvent = Union[
    OfferingCreated,
    OfferingUpdated,
    OfferingRemoved,
    AgreementCreated,
    AgreementCancelled,
    AgreementCompleted,
    PaymentMade,
]


class EventPoller(Protocol):
    """Polls for new events emitted by the storage marketplace contract."""

    @property
    def cursor(self) -> str | None:
        """Opaque pagination cursor of the last poll."""
        ...

    @property
    def last_ledger(self) -> int | None:
        """Highest ledger seen so far."""
        ...

    def set_cursor(self, cursor: str) -> None:
        ...

    async def poll(self) -> list[ContractEvent]:
        """Fetch new events since the last cursor. Returns deserialized events."""
        ...

    async def close(self) -> None:
        ...
