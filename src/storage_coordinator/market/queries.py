"""Marketplace query service - read-only views over the projected store."""

from __future__ import annotations

from storage_coordinator.errors import AgreementNotFound, InvalidAgreementId, TransferNotFound
from storage_coordinator.interfaces.store import MarketStore
from storage_coordinator.models.records import (
    AgreementRecord,
    FragmentTransfer,
    OfferingRecord,
    PaymentRecord,
)


def parse_agreement_id(raw: int | str) -> int:
    """Accept an int or a decimal string. Raises InvalidAgreementId otherwise."""
    if isinstance(raw, bool):
        raise InvalidAgreementId(f"invalid agreement id: {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip()
        if not (text.isascii() and text.isdigit()):
            raise InvalidAgreementId(f"invalid agreement id: {raw!r}")
        value = int(text)
    if value < 0:
        raise InvalidAgreementId(f"invalid agreement id: {raw!r}")
    return value


class MarketplaceQueryService:
    """Pure reads. Nothing here writes to the store, not even the activity log."""

    def __init__(self, store: MarketStore) -> None:
        self._store = store

    # ── Offerings ──────────────────────────────────────────

    async def list_active_offerings(self) -> list[OfferingRecord]:
        return await self._store.list_offerings(available=True)

    async def offerings_by_provider(self, account: str) -> list[OfferingRecord]:
        """Every offering the account has published, withdrawn ones included."""
        return await self._store.list_offerings(provider=account)

    # ── Agreements ─────────────────────────────────────────

    async def list_agreements(self) -> list[AgreementRecord]:
        return await self._store.list_agreements()

    async def agreements_by_consumer(self, consumer: str) -> list[AgreementRecord]:
        return await self._store.list_agreements(consumer=consumer)

    async def agreements_by_provider(self, provider: str) -> list[AgreementRecord]:
        return await self._store.list_agreements(provider=provider)

    async def agreement_by_id(self, raw_id: int | str) -> AgreementRecord:
        agreement_id = parse_agreement_id(raw_id)
        agreement = await self._store.get_agreement(agreement_id)
        if agreement is None:
            raise AgreementNotFound(f"agreement {agreement_id} not found")
        return agreement

    async def active_agreement_for_consumer(self, consumer: str) -> AgreementRecord | None:
        return await self._store.latest_active_agreement_for_consumer(consumer)

    async def payments_for_agreement(self, raw_id: int | str) -> list[PaymentRecord]:
        agreement = await self.agreement_by_id(raw_id)
        return await self._store.list_payments(agreement.agreement_id)

    # ── Transfers ──────────────────────────────────────────

    async def transfer_status(self, file_id: str) -> FragmentTransfer:
        transfer = await self._store.get_transfer(file_id)
        if transfer is None:
            raise TransferNotFound(f"no transfer with file id {file_id}")
        return transfer
