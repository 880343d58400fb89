"""ProviderChannel protocol - the live link to one provider agent."""

from __future__ import annotations

from typing import Any, Protocol


class ProviderChannel(Protocol):
    """Sends control messages over a provider's persistent connection."""

    @property
    def closed(self) -> bool:
        ...

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        """Send one event envelope. Raises if the connection is gone."""
        ...
