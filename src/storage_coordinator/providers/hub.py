"""Provider hub - websocket endpoint that provider agents connect to."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from aiohttp import WSMsgType, web

from storage_coordinator.errors import MessageError
from storage_coordinator.models.messages import (
    FILE_STORED,
    PROVIDER_REGISTRATION,
    STORAGE_ERROR,
    FileStored,
    ProviderRegistration,
    StorageError,
    decode_envelope,
    encode_envelope,
)
from storage_coordinator.providers.registry import ProviderRegistry
from storage_coordinator.transfers.dispatcher import FragmentDispatcher

log = logging.getLogger(__name__)


class WebSocketChannel:
    """ProviderChannel over an aiohttp server-side websocket."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self._ws.closed:
            raise ConnectionResetError("websocket is closed")
        await self._ws.send_str(encode_envelope(event, payload))


class ProviderHub:
    """Routes provider frames to the registry and the dispatcher.

    One connection id per websocket. A bad frame is logged and skipped,
    the connection stays open. Closing the socket unregisters the
    connection and fails whatever was still pending on it.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        dispatcher: FragmentDispatcher,
        heartbeat: float | None = 30.0,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._heartbeat = heartbeat

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        await ws.prepare(request)

        connection_id = uuid.uuid4().hex
        channel = WebSocketChannel(ws)
        log.info("Provider connected: %s (%s)", connection_id, request.remote)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_frame(connection_id, channel, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log.warning(
                        "Websocket error on %s: %s", connection_id, ws.exception(),
                    )
                else:
                    log.debug("Ignoring %s frame on %s", msg.type, connection_id)
        finally:
            await self._disconnected(connection_id)
        return ws

    async def handle_frame(self, connection_id: str, channel: WebSocketChannel, raw: str) -> None:
        """Route one text frame. Never raises."""
        try:
            event, data = decode_envelope(raw)
            if event == PROVIDER_REGISTRATION:
                reg = ProviderRegistration.from_payload(data)
                self._registry.register(
                    connection_id, reg.provider_address, reg.available_storage, channel,
                )
            elif event == FILE_STORED:
                await self._dispatcher.on_file_stored(connection_id, FileStored.from_payload(data))
            elif event == STORAGE_ERROR:
                await self._dispatcher.on_storage_error(
                    connection_id, StorageError.from_payload(data),
                )
            else:
                log.warning("Unknown event '%s' from %s", event, connection_id)
        except MessageError as exc:
            log.warning("Malformed message from %s: %s", connection_id, exc)
        except Exception as exc:
            log.error("Error handling message from %s: %s", connection_id, exc, exc_info=True)

    async def _disconnected(self, connection_id: str) -> None:
        self._registry.unregister(connection_id)
        try:
            failed = await self._dispatcher.on_provider_disconnected(connection_id)
        except Exception as exc:
            log.error(
                "Error failing transfers of %s: %s", connection_id, exc, exc_info=True,
            )
            return
        if failed:
            log.warning("%d pending transfer(s) lost with %s", failed, connection_id)
        log.info("Provider disconnected: %s", connection_id)
