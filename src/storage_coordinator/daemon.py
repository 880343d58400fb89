"""Coordinator daemon - wires the chain projection, the provider hub and the HTTP API."""

from __future__ import annotations

import asyncio
import logging
import signal

from aiohttp import web

from storage_coordinator.api.server import build_app
from storage_coordinator.market.projector import EventProjector
from storage_coordinator.market.queries import MarketplaceQueryService
from storage_coordinator.models.config import CoordinatorConfig
from storage_coordinator.providers.hub import ProviderHub
from storage_coordinator.providers.registry import ProviderRegistry
from storage_coordinator.stellar.poller import SorobanEventPoller
from storage_coordinator.storage.sqlite import SQLiteMarketStore
from storage_coordinator.transfers.dispatcher import FragmentDispatcher

log = logging.getLogger(__name__)


class CoordinatorDaemon:
    """Storage marketplace coordinator.

    Projects contract events into the local store, keeps the registry of
    connected provider agents, serves the HTTP API, and times out fragment
    transfers that never get acknowledged.
    """

    def __init__(self, cfg: CoordinatorConfig) -> None:
        self._cfg = cfg
        self._running = False
        self._runner: web.AppRunner | None = None
        self._reaper: asyncio.Task | None = None

        # Core components
        self.store = SQLiteMarketStore(cfg.db_path)
        self.poller = SorobanEventPoller(cfg.rpc_url, cfg.contract_id, cfg.start_ledger)
        self.projector = EventProjector(self.store)
        self.registry = ProviderRegistry()
        self.dispatcher = FragmentDispatcher(
            self.registry,
            self.store,
            transfer_timeout=cfg.transfer_timeout,
            capacity_aware=cfg.capacity_aware,
        )
        self.queries = MarketplaceQueryService(self.store)
        self.hub = ProviderHub(self.registry, self.dispatcher, heartbeat=cfg.ws_heartbeat)

    def build_app(self) -> web.Application:
        return build_app(
            self.queries,
            self.dispatcher,
            self.registry,
            self.hub,
            max_upload_bytes=self._cfg.max_upload_bytes,
        )

    async def start(self) -> None:
        """Initialize components and run the main loop."""
        log.info("Starting storage coordinator")
        log.info("  Network: %s", self._cfg.network)
        log.info("  Contract: %s", self._cfg.contract_id)
        log.info("  RPC: %s", self._cfg.rpc_url)
        log.info("  Listening on: %s:%d", self._cfg.host, self._cfg.port)

        await self.store.initialize()
        await self.restore_cursor()
        await self.dispatcher.recover_orphaned()

        self._running = True
        await self.store.log_activity("coordinator_started", "Coordinator started")

        try:
            await self._start_http()
            self._reaper = asyncio.create_task(self._reap_loop())
            await self._main_loop()
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Signal the daemon to stop gracefully."""
        log.info("Stop requested")
        self._running = False

    async def restore_cursor(self) -> None:
        cursor, last_ledger = await self.store.get_cursor()
        if cursor:
            self.poller.set_cursor(cursor)
            log.info("Restored cursor %s (ledger %s)", cursor, last_ledger)
        elif last_ledger:
            self.poller.set_start_ledger(last_ledger)
            log.info("Resuming from ledger %d", last_ledger)

    async def poll_once(self) -> int:
        """Poll, project in order, then checkpoint. Returns events applied."""
        events = await self.poller.poll()
        applied = await self.projector.project_all(events)
        if self.poller.cursor:
            await self.store.set_cursor(self.poller.cursor, self.poller.last_ledger)
        if events:
            log.debug("Applied %d of %d events", applied, len(events))
        return applied

    async def _main_loop(self) -> None:
        """The core polling loop."""
        while self._running:
            try:
                await self.poll_once()
                await asyncio.sleep(self._cfg.poll_interval)
            except asyncio.CancelledError:
                log.info("Main loop cancelled")
                break
            except Exception as exc:
                log.error("Main loop error: %s", exc, exc_info=True)
                await self.store.log_activity("error", str(exc))
                await asyncio.sleep(self._cfg.error_backoff)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cfg.reaper_interval)
            try:
                expired = await self.dispatcher.expire_overdue()
            except Exception as exc:
                log.error("Transfer reaper error: %s", exc, exc_info=True)
                continue
            if expired:
                log.warning("Timed out %d unacknowledged transfer(s)", expired)

    async def _start_http(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._cfg.host, self._cfg.port)
        await site.start()
        log.info("HTTP API listening on http://%s:%d", self._cfg.host, self._cfg.port)

    async def _shutdown(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.poller.close()
        await self.store.log_activity("coordinator_stopped", "Coordinator stopped")
        await self.store.close()
        log.info("Coordinator shut down cleanly")


async def run_daemon(cfg: CoordinatorConfig) -> None:
    """Entry point for running the coordinator."""
    daemon = CoordinatorDaemon(cfg)

    loop = asyncio.get_running_loop()

    def _signal_handler():
        asyncio.ensure_future(daemon.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    await daemon.start()
