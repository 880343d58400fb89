"""Marketplace components - event projection and read queries."""

from storage_coordinator.market.projector import EventProjector, derive_price_per_gb_per_day
from storage_coordinator.market.queries import MarketplaceQueryService, parse_agreement_id

__all__ = [
    "EventProjector",
    "MarketplaceQueryService",
    "derive_price_per_gb_per_day",
    "parse_agreement_id",
]
