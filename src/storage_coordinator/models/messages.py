"""Control messages exchanged between the coordinator and provider agents.

Every websocket frame is a JSON envelope ``{"event": <name>, "data": {...}}``.
Payload keys are camelCase on the wire.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from storage_coordinator.errors import MessageError

PROVIDER_REGISTRATION = "provider_registration"
FILE_STORED = "file_stored"
STORAGE_ERROR = "storage_error"
STORE_FILE = "store_file"


def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise MessageError(f"missing field '{key}'")
    return data[key]


def optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MessageError(f"expected integer, got {value!r}") from None


@dataclass(frozen=True)
class ProviderRegistration:
    provider_address: str
    available_storage: int  # GB

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ProviderRegistration:
        raw = _require(data, "availableStorage")
        try:
            gb = float(raw)
        except (TypeError, ValueError):
            raise MessageError(f"invalid availableStorage: {raw!r}") from None
        if isinstance(raw, bool) or not math.isfinite(gb) or gb < 0:
            raise MessageError(f"invalid availableStorage: {raw!r}")
        storage = math.floor(gb)
        return cls(
            provider_address=str(_require(data, "providerAddress")),
            available_storage=storage,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "providerAddress": self.provider_address,
            "availableStorage": self.available_storage,
        }


@dataclass(frozen=True)
class FileStored:
    agreement_id: int | None
    file_id: str
    provider_address: str

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> FileStored:
        return cls(
            agreement_id=optional_int(data.get("agreementId")),
            file_id=str(_require(data, "fileId")),
            provider_address=str(_require(data, "providerAddress")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "agreementId": self.agreement_id,
            "fileId": self.file_id,
            "providerAddress": self.provider_address,
        }


@dataclass(frozen=True)
class StorageError:
    agreement_id: int | None
    file_id: str
    provider_address: str
    error: str

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> StorageError:
        return cls(
            agreement_id=optional_int(data.get("agreementId")),
            file_id=str(_require(data, "fileId")),
            provider_address=str(_require(data, "providerAddress")),
            error=str(data.get("error") or "unknown error"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "agreementId": self.agreement_id,
            "fileId": self.file_id,
            "providerAddress": self.provider_address,
            "error": self.error,
        }


@dataclass(frozen=True)
class StoreFileRequest:
    """Coordinator -> provider. ``encrypted_fragment`` is the encoded payload."""

    agreement_id: int | None
    file_id: str
    encrypted_fragment: str
    original_file_name: str

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> StoreFileRequest:
        return cls(
            agreement_id=optional_int(data.get("agreementId")),
            file_id=str(_require(data, "fileId")),
            encrypted_fragment=str(_require(data, "encryptedFragment")),
            original_file_name=str(_require(data, "originalFileName")),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "agreementId": self.agreement_id,
            "fileId": self.file_id,
            "encryptedFragment": self.encrypted_fragment,
            "originalFileName": self.original_file_name,
        }


def encode_envelope(event: str, payload: dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": payload})


def decode_envelope(raw: str) -> tuple[str, dict[str, Any]]:
    """Split a text frame into (event name, payload)."""
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MessageError(f"invalid JSON frame: {exc}") from None
    if not isinstance(frame, dict):
        raise MessageError("frame is not a JSON object")
    event = frame.get("event")
    data = frame.get("data", {})
    if not isinstance(event, str) or not event:
        raise MessageError("frame has no event name")
    if not isinstance(data, dict):
        raise MessageError(f"payload of '{event}' is not an object")
    return event, data
