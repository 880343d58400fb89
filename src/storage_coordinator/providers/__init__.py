"""Provider side - live registry, websocket hub and the provider agent."""

from storage_coordinator.providers.agent import ProviderAgent
from storage_coordinator.providers.hub import ProviderHub, WebSocketChannel
from storage_coordinator.providers.registry import ProviderConnection, ProviderRegistry

__all__ = [
    "ProviderAgent",
    "ProviderConnection",
    "ProviderHub",
    "ProviderRegistry",
    "WebSocketChannel",
]
