"""Marketplace contract event models deserialized from the Soroban event stream."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OfferingCreated:
    """A provider published new storage capacity."""

    offering_id: int
    provider: str  # Stellar address
    capacity: int  # GB
    price_per_gb_per_day: int
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)


@dataclass(frozen=True)
class OfferingUpdated:
    """A provider changed the capacity or price of an offering."""

    offering_id: int
    provider: str
    capacity: int
    price_per_gb_per_day: int
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)


@dataclass(frozen=True)
class OfferingRemoved:
    """A provider withdrew an offering (soft delete)."""

    offering_id: int
    provider: str
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)


@dataclass(frozen=True)
class AgreementCreated:
    """A consumer rented capacity from a provider."""

    agreement_id: int
    consumer: str
    provider: str
    capacity: int  # GB
    total_price: int
    start_time: int  # unix seconds
    end_time: int  # unix seconds
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)


@dataclass(frozen=True)
class AgreementCancelled:
    agreement_id: int
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)


@dataclass(frozen=True)
class AgreementCompleted:
    agreement_id: int
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)


@dataclass(frozen=True)
class PaymentMade:
    """A consumer paid towards an agreement. Recorded, never settled here."""

    agreement_id: int
    amount: int
    ledger_sequence: int
    event_index: int = 0

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)
