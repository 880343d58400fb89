"""Stellar/Soroban integration components."""

from storage_coordinator.stellar.poller import SorobanEventPoller, build_event

__all__ = ["SorobanEventPoller", "build_event"]
