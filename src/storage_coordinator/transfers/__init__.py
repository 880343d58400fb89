"""Fragment transfer - encoding and dispatch to providers."""

from storage_coordinator.transfers.dispatcher import FragmentDispatcher
from storage_coordinator.transfers.encoding import (
    Base64Encoder,
    FragmentCipher,
    FragmentEncoder,
    PassthroughCipher,
)

__all__ = [
    "Base64Encoder",
    "FragmentCipher",
    "FragmentDispatcher",
    "FragmentEncoder",
    "PassthroughCipher",
]
