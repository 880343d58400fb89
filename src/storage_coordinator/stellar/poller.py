"""Soroban event poller - polls RPC for storage marketplace contract events."""

from __future__ import annotations

import logging
from typing import Any, Callable

from stellar_sdk import Address, SorobanServerAsync, scval, xdr
from stellar_sdk.soroban_rpc import EventFilter, EventFilterType, EventInfo

from storage_coordinator.interfaces.poller import ContractEvent
from storage_coordinator.models.events import (
    AgreementCancelled,
    AgreementCompleted,
    AgreementCreated,
    OfferingCreated,
    OfferingRemoved,
    OfferingUpdated,
    PaymentMade,
)

log = logging.getLogger(__name__)

# topic[0] symbol emitted by the marketplace contract for each event kind
EVENT_KINDS = (
    "OfferingCreated",
    "OfferingUpdated",
    "OfferingRemoved",
    "AgreementCreated",
    "AgreementCancelled",
    "AgreementCompleted",
    "PaymentMade",
)

_SCALAR_DECODERS: dict[xdr.SCValType, Callable[[xdr.SCVal], Any]] = {
    xdr.SCValType.SCV_BOOL: scval.from_bool,
    xdr.SCValType.SCV_U32: scval.from_uint32,
    xdr.SCValType.SCV_I32: scval.from_int32,
    xdr.SCValType.SCV_U64: scval.from_uint64,
    xdr.SCValType.SCV_I64: scval.from_int64,
    xdr.SCValType.SCV_U128: scval.from_uint128,
    xdr.SCValType.SCV_I128: scval.from_int128,
    xdr.SCValType.SCV_TIMEPOINT: scval.from_timepoint,
    xdr.SCValType.SCV_DURATION: scval.from_duration,
    xdr.SCValType.SCV_SYMBOL: scval.from_symbol,
    xdr.SCValType.SCV_STRING: scval.from_string,
    xdr.SCValType.SCV_BYTES: scval.from_bytes,
    xdr.SCValType.SCV_ADDRESS: scval.from_address,
}


def _scval_to_python(val: xdr.SCVal) -> Any:
    """Convert an SCVal tree into plain Python values."""
    if val.type == xdr.SCValType.SCV_VOID:
        return None
    if val.type == xdr.SCValType.SCV_MAP:
        entries = val.map.sc_map if val.map else []
        return {_scval_to_python(e.key): _scval_to_python(e.val) for e in entries}
    if val.type == xdr.SCValType.SCV_VEC:
        items = val.vec.sc_vec if val.vec else []
        return [_scval_to_python(v) for v in items]
    decoder = _SCALAR_DECODERS.get(val.type)
    if decoder is None:
        raise ValueError(f"unsupported SCVal type {val.type}")
    return decoder(val)


def _addr_to_str(addr: object) -> str:
    """Extract the string address from a stellar_sdk.Address or plain str."""
    if isinstance(addr, Address):
        return addr.address
    if isinstance(addr, bytes):
        return addr.decode("utf-8")
    return str(addr)


def _event_index(event_id: str) -> int:
    """Event IDs look like '{paging_token}-{index}'."""
    try:
        return int(event_id.rsplit("-", 1)[1])
    except (ValueError, IndexError):
        return 0


def build_event(
    kind: str, payload: dict[str, Any], ledger: int, index: int = 0
) -> ContractEvent | None:
    """Build one of our model events from a decoded event payload.

    Returns None for unknown kinds. Raises KeyError/TypeError/ValueError on
    a payload that is missing fields or has the wrong types.
    """
    if kind == "OfferingCreated" or kind == "OfferingUpdated":
        cls = OfferingCreated if kind == "OfferingCreated" else OfferingUpdated
        return cls(
            offering_id=int(payload["offering_id"]),
            provider=_addr_to_str(payload["provider"]),
            capacity=int(payload["capacity"]),
            price_per_gb_per_day=int(payload["price_per_gb_per_day"]),
            ledger_sequence=ledger,
            event_index=index,
        )

    if kind == "OfferingRemoved":
        return OfferingRemoved(
            offering_id=int(payload["offering_id"]),
            provider=_addr_to_str(payload["provider"]),
            ledger_sequence=ledger,
            event_index=index,
        )

    if kind == "AgreementCreated":
        return AgreementCreated(
            agreement_id=int(payload["agreement_id"]),
            consumer=_addr_to_str(payload["consumer"]),
            provider=_addr_to_str(payload["provider"]),
            capacity=int(payload["capacity"]),
            total_price=int(payload["total_price"]),
            start_time=int(payload["start_time"]),
            end_time=int(payload["end_time"]),
            ledger_sequence=ledger,
            event_index=index,
        )

    if kind == "AgreementCancelled":
        return AgreementCancelled(
            agreement_id=int(payload["agreement_id"]),
            ledger_sequence=ledger,
            event_index=index,
        )

    if kind == "AgreementCompleted":
        return AgreementCompleted(
            agreement_id=int(payload["agreement_id"]),
            ledger_sequence=ledger,
            event_index=index,
        )

    if kind == "PaymentMade":
        return PaymentMade(
            agreement_id=int(payload["agreement_id"]),
            amount=int(payload["amount"]),
            ledger_sequence=ledger,
            event_index=index,
        )

    return None


def _parse_event(info: EventInfo) -> ContractEvent | None:
    """Parse a raw EventInfo into one of our model event types.

    Returns None if the event type is unrecognized or malformed.
    """
    if len(info.topic) < 1:
        return None

    try:
        kind = scval.from_symbol(xdr.SCVal.from_xdr(info.topic[0]))
    except Exception:
        log.debug("Could not decode topic[0] for event %s", info.id)
        return None

    if kind not in EVENT_KINDS:
        log.debug("Ignoring event kind: %s", kind)
        return None

    try:
        payload = _scval_to_python(xdr.SCVal.from_xdr(info.value))
    except Exception:
        log.warning("Could not decode value XDR for event %s", info.id)
        return None

    if not isinstance(payload, dict):
        log.warning("%s event %s has a non-map payload", kind, info.id)
        return None

    try:
        return build_event(kind, payload, info.ledger, _event_index(info.id))
    except (KeyError, TypeError, ValueError) as exc:
        log.warning("Failed to parse %s event %s: %s", kind, info.id, exc)
        return None


class SorobanEventPoller:
    """Polls Soroban RPC for storage marketplace contract events.

    Uses SorobanServerAsync.get_events() filtered by contract id. Maintains
    a cursor (event paging token) for resumption across restarts.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_id: str,
        start_ledger: int | None = None,
    ) -> None:
        self._server = SorobanServerAsync(rpc_url)
        self._contract_id = contract_id
        self._cursor: str | None = None
        self._start_ledger: int | None = start_ledger
        self._last_ledger: int | None = None
        self._filters = [
            EventFilter(
                event_type=EventFilterType.CONTRACT,
                contract_ids=[contract_id],
            )
        ]

    @property
    def cursor(self) -> str | None:
        return self._cursor

    @property
    def last_ledger(self) -> int | None:
        return self._last_ledger

    def set_cursor(self, cursor: str) -> None:
        """Restore cursor from persisted state."""
        self._cursor = cursor

    def set_start_ledger(self, ledger: int) -> None:
        self._start_ledger = ledger

    async def close(self) -> None:
        """Close the underlying aiohttp session."""
        await self._server.close()

    async def poll(self) -> list[ContractEvent]:
        """Fetch new events since last cursor.

        On first call (no cursor), uses start_ledger or latest_ledger from RPC.
        Subsequent calls use the cursor for pagination.
        """
        try:
            if self._cursor:
                response = await self._server.get_events(
                    filters=self._filters,
                    cursor=self._cursor,
                    limit=100,
                )
            else:
                start = self._start_ledger
                if start is None:
                    latest = await self._server.get_latest_ledger()
                    start = latest.sequence
                    log.info("No cursor, starting from latest ledger %d", start)

                response = await self._server.get_events(
                    start_ledger=start,
                    filters=self._filters,
                    limit=100,
                )

        except Exception as exc:
            log.error("Event poll failed: %s", exc)
            raise

        events: list[ContractEvent] = []
        for info in response.events:
            if not info.in_successful_contract_call:
                continue
            self._last_ledger = max(self._last_ledger or 0, info.ledger)
            parsed = _parse_event(info)
            if parsed is not None:
                events.append(parsed)
                log.debug(
                    "Parsed %s event at ledger %d",
                    type(parsed).__name__,
                    info.ledger,
                )

        # Update cursor to the last event we saw
        if response.events:
            self._cursor = response.events[-1].id
        elif getattr(response, "cursor", None):
            self._cursor = response.cursor

        if events:
            log.info("Polled %d events (cursor: %s)", len(events), self._cursor)

        return events
