"""Fragment encoding (wire format) and sealing (confidentiality) capabilities.

The two are separate: an encoder only makes bytes safe for a JSON frame,
a cipher is what would keep them secret. The default cipher is a
passthrough and provides no confidentiality at all.
"""

from __future__ import annotations

import base64
import binascii
from typing import Protocol

from storage_coordinator.errors import MessageError


class FragmentEncoder(Protocol):
    """Reversible bytes <-> text transform for the store_file payload."""

    def encode(self, data: bytes) -> str:
        ...

    def decode(self, text: str) -> bytes:
        ...


class FragmentCipher(Protocol):
    """Seals fragment bytes before encoding, opens them on the provider."""

    def seal(self, data: bytes) -> bytes:
        ...

    def open(self, data: bytes) -> bytes:
        ...


class Base64Encoder:
    """Standard base64; decoding rejects characters outside the alphabet."""

    def encode(self, data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")

    def decode(self, text: str) -> bytes:
        try:
            return base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise MessageError(f"fragment is not valid base64: {exc}") from None


class PassthroughCipher:
    """Returns data unchanged. Plug a real AEAD cipher in here for secrecy."""

    def seal(self, data: bytes) -> bytes:
        return data

    def open(self, data: bytes) -> bytes:
        return data
