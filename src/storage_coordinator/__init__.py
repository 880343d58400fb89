"""storage_coordinator - decentralized storage marketplace coordinator."""

__version__ = "0.1.0"
