"""MarketStore protocol - the off-chain projection of marketplace state."""

from __future__ import annotations

from typing import Protocol

from storage_coordinator.models.records import (
    ActivityRecord,
    AgreementRecord,
    FragmentTransfer,
    OfferingRecord,
    PaymentRecord,
    StoreCounts,
    TransferStatus,
)


class MarketStore(Protocol):
    """Persists projected offerings/agreements, transfers and the event checkpoint."""

    # ── Lifecycle ──────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        ...

    async def close(self) -> None:
        """Close the database connection."""
        ...

    # ── Cursor ─────────────────────────────────────────────

    async def get_cursor(self) -> tuple[str | None, int | None]:
        ...

    async def set_cursor(self, cursor: str | None, last_ledger: int | None) -> None:
        ...

    # ── Offerings ──────────────────────────────────────────

    async def get_offering(self, offering_id: int) -> OfferingRecord | None:
        ...

    async def save_offering(self, offering: OfferingRecord) -> None:
        ...

    async def list_offerings(
        self, available: bool | None = None, provider: str | None = None
    ) -> list[OfferingRecord]:
        ...

    # ── Agreements ─────────────────────────────────────────

    async def get_agreement(self, agreement_id: int) -> AgreementRecord | None:
        ...

    async def save_agreement(self, agreement: AgreementRecord) -> None:
        ...

    async def list_agreements(
        self,
        consumer: str | None = None,
        provider: str | None = None,
        active: bool | None = None,
    ) -> list[AgreementRecord]:
        ...

    async def latest_active_agreement_for_consumer(
        self, consumer: str
    ) -> AgreementRecord | None:
        ...

    # ── Payments ───────────────────────────────────────────

    async def save_payment(self, payment: PaymentRecord) -> bool:
        ...

    async def list_payments(self, agreement_id: int) -> list[PaymentRecord]:
        ...

    # ── Transfers ──────────────────────────────────────────

    async def save_transfer(self, transfer: FragmentTransfer) -> None:
        ...

    async def get_transfer(self, file_id: str) -> FragmentTransfer | None:
        ...

    async def update_transfer_status(
        self, file_id: str, status: TransferStatus, error: str | None = None
    ) -> None:
        ...

    async def list_transfers(self, status: str | None = None) -> list[FragmentTransfer]:
        ...

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self, event_type: str, message: str, subject_id: str | int | None = None
    ) -> None:
        ...

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        ...

    async def counts(self) -> StoreCounts:
        ...
