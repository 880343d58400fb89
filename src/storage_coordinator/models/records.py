"""Internal record types for the projected store and transfer tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TransferStatus(str, Enum):
    """Lifecycle of one fragment delivery."""

    DISPATCHED = "dispatched"  # sent, waiting for the provider
    STORED = "stored"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self is not TransferStatus.DISPATCHED


@dataclass
class OfferingRecord:
    """An offering as projected into the store.

    provider/capacity/price are None on a partial record created by an
    event that arrived before OfferingCreated.
    """

    offering_id: int
    provider: str | None = None
    capacity: int | None = None  # GB
    price_per_gb_per_day: int | None = None
    is_available: bool = True
    ledger_sequence: int = 0
    event_index: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)

    def to_json(self) -> dict[str, Any]:
        return {
            "offeringId": self.offering_id,
            "provider": self.provider,
            "capacity": self.capacity,
            "pricePerGBPerDay": self.price_per_gb_per_day,
            "isAvailable": self.is_available,
            "ledgerSequence": self.ledger_sequence,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class AgreementRecord:
    """An agreement as projected into the store.

    price_per_gb_per_day is None when the terms could not produce a price
    (zero capacity or duration) or the creation event has not been seen yet.
    """

    agreement_id: int
    consumer: str | None = None
    provider: str | None = None
    capacity: int | None = None
    total_price: int | None = None
    price_per_gb_per_day: float | None = None
    start_time: int | None = None
    end_time: int | None = None
    is_active: bool = True
    ledger_sequence: int = 0
    event_index: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def position(self) -> tuple[int, int]:
        return (self.ledger_sequence, self.event_index)

    def to_json(self) -> dict[str, Any]:
        return {
            "agreementId": self.agreement_id,
            "consumer": self.consumer,
            "provider": self.provider,
            "capacity": self.capacity,
            "totalPrice": self.total_price,
            "pricePerGBPerDay": self.price_per_gb_per_day,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "isActive": self.is_active,
            "ledgerSequence": self.ledger_sequence,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class PaymentRecord:
    agreement_id: int
    amount: int
    ledger_sequence: int
    event_index: int = 0
    created_at: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "agreementId": self.agreement_id,
            "amount": self.amount,
            "ledgerSequence": self.ledger_sequence,
            "eventIndex": self.event_index,
            "createdAt": self.created_at,
        }


@dataclass
class FragmentTransfer:
    """State of one fragment delivery, keyed by file_id."""

    file_id: str
    agreement_id: int | None
    provider_address: str
    connection_id: str
    original_file_name: str
    size_bytes: int = 0
    status: TransferStatus = TransferStatus.DISPATCHED
    error: str | None = None
    dispatched_at: float = 0.0  # monotonic; not persisted
    created_at: str = ""
    updated_at: str = ""

    def to_json(self) -> dict[str, Any]:
        return {
            "fileId": self.file_id,
            "agreementId": self.agreement_id,
            "providerAddress": self.provider_address,
            "originalFileName": self.original_file_name,
            "sizeBytes": self.size_bytes,
            "status": self.status.value,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class DispatchResult:
    """Returned by FragmentDispatcher.dispatch: sent, not yet stored."""

    file_id: str
    agreement_id: int | None
    provider_address: str
    connection_id: str
    status: TransferStatus = TransferStatus.DISPATCHED


@dataclass
class TransferOutcome:
    """Terminal (or current) state delivered to outcome subscribers."""

    file_id: str
    status: TransferStatus
    provider_address: str
    error: str | None = None


@dataclass
class ActivityRecord:
    """A single activity log entry."""

    id: int
    event_type: str
    subject_id: str | None
    message: str
    created_at: str


@dataclass
class StoreCounts:
    """Row counts, used by the CLI status output and by tests."""

    offerings: int = 0
    agreements: int = 0
    payments: int = 0
    transfers: int = 0
    activity: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
