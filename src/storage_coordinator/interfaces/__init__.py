"""Protocol interfaces for the storage coordinator components."""

from storage_coordinator.interfaces.channel import ProviderChannel
from storage_coordinator.interfaces.poller import ContractEvent, EventPoller
from storage_coordinator.interfaces.store import MarketStore

__all__ = [
    "ContractEvent", "EventPoller",
    "MarketStore",
    "ProviderChannel",
]
