"""Provider registry - the live set of connected provider agents."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from storage_coordinator.interfaces.channel import ProviderChannel

log = logging.getLogger(__name__)


@dataclass
class ProviderConnection:
    """One live link to a provider agent. Never persisted."""

    connection_id: str
    provider_address: str
    available_storage: int  # GB, as reported at registration
    channel: ProviderChannel = field(repr=False, compare=False)
    registered_at: float = field(default_factory=time.time)

    def to_json(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "providerAddress": self.provider_address,
            "availableStorage": self.available_storage,
            "registeredAt": self.registered_at,
        }


class ProviderRegistry:
    """In-memory registry keyed by connection id.

    The same provider address may hold several entries at once; they are
    independent. Iteration follows registration order, so selection is
    deterministic within a process. All access happens on the event loop
    thread, hence no locking.
    """

    def __init__(self) -> None:
        self._connections: dict[str, ProviderConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(
        self,
        connection_id: str,
        provider_address: str,
        available_storage: int,
        channel: ProviderChannel,
    ) -> ProviderConnection:
        """Insert or overwrite the record for this connection."""
        conn = ProviderConnection(
            connection_id=connection_id,
            provider_address=provider_address,
            available_storage=available_storage,
            channel=channel,
        )
        self._connections[connection_id] = conn
        log.info(
            "Provider registered: %s, Available Storage: %d GB (connection %s)",
            provider_address, available_storage, connection_id,
        )
        return conn

    def unregister(self, connection_id: str) -> ProviderConnection | None:
        """Remove a connection. Unknown ids are a no-op."""
        conn = self._connections.pop(connection_id, None)
        if conn is not None:
            log.info(
                "Provider unregistered: %s (connection %s)",
                conn.provider_address, connection_id,
            )
        return conn

    def get(self, connection_id: str) -> ProviderConnection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[ProviderConnection]:
        return list(self._connections.values())

    def by_address(self, provider_address: str) -> list[ProviderConnection]:
        return [
            c for c in self._connections.values()
            if c.provider_address == provider_address
        ]

    def select_eligible_provider(
        self,
        required_capacity_gb: float = 0.0,
        preferred_address: str | None = None,
    ) -> ProviderConnection | None:
        """Pick a connection able to hold required_capacity_gb.

        First eligible connection with preferred_address if any, otherwise
        the first eligible connection in registration order.
        """
        eligible = [
            c for c in self._connections.values()
            if c.available_storage >= required_capacity_gb and not c.channel.closed
        ]
        if not eligible:
            return None
        if preferred_address:
            for conn in eligible:
                if conn.provider_address == preferred_address:
                    return conn
        return eligible[0]
