"""Configuration models for the coordinator and the provider agent."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CoordinatorConfig:
    """Complete coordinator configuration."""

    # Coordinator
    host: str = "0.0.0.0"
    port: int = 3000
    poll_interval: int = 5  # seconds
    error_backoff: int = 30  # seconds
    log_level: str = "info"
    ws_heartbeat: float = 30.0  # seconds between websocket pings

    # Stellar
    network: str = "testnet"
    rpc_url: str = "https://soroban-testnet.stellar.org"
    contract_id: str = ""  # storage marketplace contract ID
    start_ledger: int | None = None  # first ledger to scan when no checkpoint exists

    # Storage
    db_path: str = "~/.storage_coordinator/state.db"

    # Transfers
    transfer_timeout: float = 300.0  # seconds before a dispatched fragment is timed out
    reaper_interval: float = 10.0  # seconds between timeout sweeps
    max_upload_mb: int = 100
    capacity_aware: bool = True  # filter providers by reported free storage

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


@dataclass
class ProviderAgentConfig:
    """Configuration of a provider agent process."""

    server_url: str = "http://localhost:3000"
    provider_address: str = ""
    storage_dir: str = "~/.storage_coordinator/fragments"
    reconnect_delay: float = 5.0  # seconds
    ws_path: str = "/providers/ws"
