"""HTTP API for marketplace queries and uploads."""

from storage_coordinator.api.server import CoordinatorApi, build_app

__all__ = ["CoordinatorApi", "build_app"]
