"""Provider agent - runs on a storage provider's machine and stores fragments."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

import aiohttp

from storage_coordinator.errors import MessageError
from storage_coordinator.models.config import ProviderAgentConfig
from storage_coordinator.models.messages import (
    FILE_STORED,
    PROVIDER_REGISTRATION,
    STORAGE_ERROR,
    STORE_FILE,
    FileStored,
    ProviderRegistration,
    StorageError,
    StoreFileRequest,
    decode_envelope,
    encode_envelope,
    optional_int,
)
from storage_coordinator.transfers.encoding import (
    Base64Encoder,
    FragmentCipher,
    FragmentEncoder,
    PassthroughCipher,
)

log = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3


def measure_available_storage(path: str | Path) -> int:
    """Free space at path in whole GB, 0 if it cannot be determined."""
    try:
        return shutil.disk_usage(path).free // BYTES_PER_GB
    except OSError as exc:
        log.warning("Could not measure free storage at %s: %s", path, exc)
        return 0


def fragment_path(storage_dir: Path, file_id: str, original_file_name: str) -> Path:
    """Destination for a fragment; both name parts are reduced to a basename."""
    name = Path(original_file_name.replace("\\", "/")).name or "fragment"
    safe_id = Path(file_id.replace("\\", "/")).name or "unknown"
    return storage_dir / f"{safe_id}_{name}"


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class ProviderAgent:
    """Keeps a websocket to the coordinator open and serves store_file requests.

    Registers on every (re)connection with freshly measured free storage.
    Write failures are reported back as storage_error, never raised.
    """

    def __init__(
        self,
        config: ProviderAgentConfig,
        encoder: FragmentEncoder | None = None,
        cipher: FragmentCipher | None = None,
    ) -> None:
        self._cfg = config
        self._storage_dir = Path(config.storage_dir).expanduser()
        self._encoder = encoder or Base64Encoder()
        self._cipher = cipher or PassthroughCipher()
        self._running = False
        self._stopped = asyncio.Event()
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def url(self) -> str:
        return self._cfg.server_url.rstrip("/") + self._cfg.ws_path

    @property
    def storage_dir(self) -> Path:
        return self._storage_dir

    async def run(self) -> None:
        """Connect, serve, and reconnect after reconnect_delay until stop()."""
        self._running = True
        self._stopped.clear()
        self._storage_dir.mkdir(parents=True, exist_ok=True)
        log.info("Provider agent %s storing into %s", self._cfg.provider_address, self._storage_dir)

        while self._running:
            try:
                await self._serve_once()
            except (aiohttp.ClientError, OSError) as exc:
                log.warning("Connection to coordinator at %s failed: %s", self.url, exc)
            if not self._running:
                break
            log.info("Reconnecting in %gs", self._cfg.reconnect_delay)
            try:
                await asyncio.wait_for(self._stopped.wait(), self._cfg.reconnect_delay)
            except asyncio.TimeoutError:
                pass
        log.info("Provider agent stopped")

    async def stop(self) -> None:
        log.info("Stop requested")
        self._running = False
        self._stopped.set()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    async def _serve_once(self) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url) as ws:
                self._ws = ws
                log.info("Connected to coordinator at %s", self.url)
                try:
                    await ws.send_str(encode_envelope(PROVIDER_REGISTRATION, self.registration()))
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            try:
                                reply = await self.handle_frame(msg.data)
                            except Exception as exc:
                                log.error("Error handling coordinator frame: %s", exc, exc_info=True)
                                continue
                            if reply is not None:
                                await ws.send_str(encode_envelope(*reply))
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            log.warning("Websocket error: %s", ws.exception())
                            break
                finally:
                    self._ws = None
        log.info("Disconnected from coordinator")

    def registration(self) -> dict[str, Any]:
        return ProviderRegistration(
            provider_address=self._cfg.provider_address,
            available_storage=measure_available_storage(self._storage_dir),
        ).to_payload()

    async def handle_frame(self, raw: str) -> tuple[str, dict[str, Any]] | None:
        """Handle one coordinator frame; returns the reply envelope, if any."""
        try:
            event, data = decode_envelope(raw)
        except MessageError as exc:
            log.warning("Malformed frame from coordinator: %s", exc)
            return None
        if event != STORE_FILE:
            log.debug("Ignoring event '%s'", event)
            return None
        return await self.handle_store_file(data)

    async def handle_store_file(self, data: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Decode and persist one fragment. Returns file_stored or storage_error."""
        try:
            request = StoreFileRequest.from_payload(data)
        except MessageError as exc:
            log.error("Invalid store_file request: %s", exc)
            return STORAGE_ERROR, self._error_payload(data, str(exc))

        try:
            content = self._cipher.open(self._encoder.decode(request.encrypted_fragment))
            path = fragment_path(self._storage_dir, request.file_id, request.original_file_name)
            await asyncio.to_thread(_write_file, path, content)
        except Exception as exc:
            log.error("Error storing file %s: %s", request.file_id, exc)
            return STORAGE_ERROR, self._error_payload(data, str(exc))

        log.info("File stored: %s (%d bytes)", path, len(content))
        return FILE_STORED, FileStored(
            agreement_id=request.agreement_id,
            file_id=request.file_id,
            provider_address=self._cfg.provider_address,
        ).to_payload()

    def _error_payload(self, data: dict[str, Any], error: str) -> dict[str, Any]:
        try:
            agreement_id = optional_int(data.get("agreementId"))
        except MessageError:
            agreement_id = None
        return StorageError(
            agreement_id=agreement_id,
            file_id=str(data.get("fileId") or ""),
            provider_address=self._cfg.provider_address,
            error=error,
        ).to_payload()
