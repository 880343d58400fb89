"""Fragment dispatcher - sends uploaded fragments to providers and tracks outcomes."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from storage_coordinator.errors import (
    FragmentDispatchError,
    NoProviderAvailable,
    TransferNotFound,
)
from storage_coordinator.interfaces.store import MarketStore
from storage_coordinator.models.messages import (
    STORE_FILE,
    FileStored,
    StorageError,
    StoreFileRequest,
)
from storage_coordinator.models.records import (
    DispatchResult,
    FragmentTransfer,
    TransferOutcome,
    TransferStatus,
)
from storage_coordinator.transfers.encoding import (
    Base64Encoder,
    FragmentCipher,
    FragmentEncoder,
    PassthroughCipher,
)

if TYPE_CHECKING:
    from storage_coordinator.providers.registry import ProviderRegistry

log = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3


def generate_file_id() -> str:
    """128 random bits as 32 hex characters."""
    return secrets.token_hex(16)


@dataclass
class _Pending:
    transfer: FragmentTransfer
    outcome: asyncio.Future


class FragmentDispatcher:
    """Selects a provider, sends the fragment and correlates the acknowledgment.

    dispatch() returns as soon as the store request is on the wire. The
    pending table keyed by file_id resolves when the provider reports
    file_stored / storage_error, when it disconnects, or when the transfer
    exceeds transfer_timeout (swept by expire_overdue()).
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: MarketStore,
        encoder: FragmentEncoder | None = None,
        cipher: FragmentCipher | None = None,
        transfer_timeout: float = 300.0,
        capacity_aware: bool = True,
    ) -> None:
        self._registry = registry
        self._store = store
        self._encoder = encoder or Base64Encoder()
        self._cipher = cipher or PassthroughCipher()
        self._transfer_timeout = transfer_timeout
        self._capacity_aware = capacity_aware
        self._pending: dict[str, _Pending] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Dispatch ───────────────────────────────────────────

    async def dispatch(
        self,
        file_bytes: bytes,
        file_name: str,
        agreement_id: int | None,
        preferred_provider: str | None = None,
    ) -> DispatchResult:
        """Send one fragment to an eligible provider.

        Raises NoProviderAvailable (nothing written, nothing sent) or
        FragmentDispatchError if the chosen connection failed mid-send.
        """
        encoded = self._encoder.encode(self._cipher.seal(file_bytes))
        file_id = generate_file_id()

        required_gb = len(file_bytes) / BYTES_PER_GB if self._capacity_aware else 0.0
        conn = self._registry.select_eligible_provider(
            required_gb, preferred_address=preferred_provider,
        )
        if conn is None:
            log.warning(
                "No available providers for %s (%d bytes)", file_name, len(file_bytes),
            )
            raise NoProviderAvailable(
                f"no connected provider can hold {len(file_bytes)} bytes"
            )

        transfer = FragmentTransfer(
            file_id=file_id,
            agreement_id=agreement_id,
            provider_address=conn.provider_address,
            connection_id=conn.connection_id,
            original_file_name=file_name,
            size_bytes=len(file_bytes),
            dispatched_at=time.monotonic(),
        )
        self._pending[file_id] = _Pending(
            transfer=transfer,
            outcome=asyncio.get_running_loop().create_future(),
        )
        try:
            await self._store.save_transfer(transfer)
        except Exception:
            del self._pending[file_id]
            raise

        request = StoreFileRequest(
            agreement_id=agreement_id,
            file_id=file_id,
            encrypted_fragment=encoded,
            original_file_name=file_name,
        )
        try:
            await conn.channel.send(STORE_FILE, request.to_payload())
        except Exception as exc:
            log.error(
                "Sending fragment %s to %s failed: %s", file_id, conn.provider_address, exc,
            )
            await self._finish(file_id, TransferStatus.FAILED, f"send failed: {exc}")
            raise FragmentDispatchError(str(exc)) from exc

        log.info(
            "Sent file fragment %s (%d bytes) to provider %s",
            file_id, len(file_bytes), conn.provider_address,
        )
        # Already sent; the activity row is best effort.
        try:
            await self._store.log_activity(
                "fragment_dispatched",
                f"{file_name} ({len(file_bytes)} bytes) -> {conn.provider_address}",
                subject_id=file_id,
            )
        except Exception as exc:
            log.warning("Could not record dispatch of %s: %s", file_id, exc)
        return DispatchResult(
            file_id=file_id,
            agreement_id=agreement_id,
            provider_address=conn.provider_address,
            connection_id=conn.connection_id,
        )

    # ── Outcome correlation ────────────────────────────────

    def _pending_for(self, file_id: str, connection_id: str) -> _Pending | None:
        pending = self._pending.get(file_id)
        if pending is None or pending.transfer.status.terminal:
            log.warning("Acknowledgment for unknown or finished transfer %s", file_id)
            return None
        if pending.transfer.connection_id != connection_id:
            log.warning(
                "Ignoring acknowledgment for %s from connection %s (sent on %s)",
                file_id, connection_id, pending.transfer.connection_id,
            )
            return None
        return pending

    async def on_file_stored(self, connection_id: str, message: FileStored) -> None:
        if self._pending_for(message.file_id, connection_id) is None:
            return
        log.info(
            "File stored by provider %s, Agreement ID: %s, File ID: %s",
            message.provider_address, message.agreement_id, message.file_id,
        )
        await self._finish(message.file_id, TransferStatus.STORED)

    async def on_storage_error(self, connection_id: str, message: StorageError) -> None:
        if self._pending_for(message.file_id, connection_id) is None:
            return
        log.error(
            "Error storing file %s on provider %s: %s",
            message.file_id, message.provider_address, message.error,
        )
        await self._finish(message.file_id, TransferStatus.FAILED, message.error)

    async def on_provider_disconnected(self, connection_id: str) -> int:
        """Fail every transfer still pending on a closed connection."""
        orphaned = [
            fid for fid, p in self._pending.items()
            if p.transfer.connection_id == connection_id and not p.transfer.status.terminal
        ]
        for file_id in orphaned:
            await self._finish(file_id, TransferStatus.FAILED, "provider disconnected")
        return len(orphaned)

    async def expire_overdue(self, now: float | None = None) -> int:
        """Time out transfers pending longer than transfer_timeout."""
        now = time.monotonic() if now is None else now
        overdue = [
            fid for fid, p in self._pending.items()
            if not p.transfer.status.terminal
            and now - p.transfer.dispatched_at >= self._transfer_timeout
        ]
        for file_id in overdue:
            await self._finish(
                file_id,
                TransferStatus.TIMED_OUT,
                f"no acknowledgment within {self._transfer_timeout:g}s",
            )
        return len(overdue)

    async def recover_orphaned(self) -> int:
        """Time out stored transfers still 'dispatched' that this process never sent.

        Called at startup: their provider connection belonged to an earlier
        run, so no acknowledgment can arrive any more.
        """
        orphaned = [
            t for t in await self._store.list_transfers(TransferStatus.DISPATCHED.value)
            if t.file_id not in self._pending
        ]
        error = "coordinator restarted before acknowledgment"
        for transfer in orphaned:
            await self._store.update_transfer_status(
                transfer.file_id, TransferStatus.TIMED_OUT, error,
            )
            await self._store.log_activity(
                "fragment_timed_out",
                f"{transfer.original_file_name} on {transfer.provider_address}: {error}",
                subject_id=transfer.file_id,
            )
        if orphaned:
            log.warning("Timed out %d transfer(s) left over from a previous run", len(orphaned))
        return len(orphaned)

    async def _finish(
        self, file_id: str, status: TransferStatus, error: str | None = None
    ) -> None:
        pending = self._pending.get(file_id)
        if pending is None or pending.transfer.status.terminal:
            return
        transfer = pending.transfer
        transfer.status = status
        transfer.error = error
        pending.outcome.set_result(
            TransferOutcome(
                file_id=file_id,
                status=status,
                provider_address=transfer.provider_address,
                error=error,
            )
        )
        # Kept in the table until the store row is updated.
        try:
            await self._store.update_transfer_status(file_id, status, error)
            await self._store.log_activity(
                f"fragment_{status.value}",
                f"{transfer.original_file_name} on {transfer.provider_address}"
                + (f": {error}" if error else ""),
                subject_id=file_id,
            )
        finally:
            self._pending.pop(file_id, None)

    # ── Lookup / subscribe ─────────────────────────────────

    async def get_status(self, file_id: str) -> FragmentTransfer | None:
        pending = self._pending.get(file_id)
        if pending is not None:
            return pending.transfer
        return await self._store.get_transfer(file_id)

    async def wait_for_outcome(
        self, file_id: str, timeout: float | None = None
    ) -> TransferOutcome:
        """Wait until the transfer reaches a terminal state.

        Raises TransferNotFound for unknown ids and asyncio.TimeoutError if
        timeout elapses first (the transfer itself stays pending).
        """
        pending = self._pending.get(file_id)
        if pending is not None:
            return await asyncio.wait_for(asyncio.shield(pending.outcome), timeout)

        transfer = await self._store.get_transfer(file_id)
        if transfer is None:
            raise TransferNotFound(file_id)
        return TransferOutcome(
            file_id=file_id,
            status=transfer.status,
            provider_address=transfer.provider_address,
            error=transfer.error,
        )
