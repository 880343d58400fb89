"""Persistent store for the projected marketplace state."""

from storage_coordinator.storage.sqlite import SQLiteMarketStore

__all__ = ["SQLiteMarketStore"]
