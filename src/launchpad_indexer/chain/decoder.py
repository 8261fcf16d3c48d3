"""ABI-based decoder for factory event logs.

The decoder is a closed table keyed by topic0: each supported event has a
fixed ABI entry and a builder producing its typed record. Anything else, or
anything that fails to decode, yields None. Decoding never raises.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode

from launchpad_indexer.chain.abi import (
    TOKEN_CREATED_ABI,
    TOKEN_GRADUATED_ABI,
    TOKENS_PURCHASED_ABI,
    TOKENS_SOLD_ABI,
    event_signature,
    event_topic,
)
from launchpad_indexer.chain.events import (
    EventKind,
    FactoryEvent,
    LogRef,
    RawLog,
    TokenCreated,
    TokenGraduated,
    TokensPurchased,
    TokensSold,
    normalize_address,
    to_hex,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _EventSpec:
    kind: EventKind
    abi: dict[str, Any]
    build: Callable[[LogRef, dict[str, Any]], FactoryEvent]

    @property
    def topic0(self) -> bytes:
        return event_topic(self.abi)

    @property
    def indexed(self) -> list[dict[str, Any]]:
        return [i for i in self.abi["inputs"] if i.get("indexed")]

    @property
    def non_indexed(self) -> list[dict[str, Any]]:
        return [i for i in self.abi["inputs"] if not i.get("indexed")]


def _build_created(ref: LogRef, f: dict[str, Any]) -> TokenCreated:
    return TokenCreated(
        ref=ref,
        token=f["token"],
        creator=f["creator"],
        name=f["name"],
        symbol=f["symbol"],
        timestamp=f["timestamp"],
    )


def _build_purchased(ref: LogRef, f: dict[str, Any]) -> TokensPurchased:
    return TokensPurchased(
        ref=ref,
        token=f["token"],
        buyer=f["buyer"],
        eth_in=f["ethIn"],
        tokens_out=f["tokensOut"],
        fee=f["fee"],
        new_reserve_base=f["newReserveETH"],
        new_reserve_quote=f["newReserveTokens"],
    )


def _build_sold(ref: LogRef, f: dict[str, Any]) -> TokensSold:
    return TokensSold(
        ref=ref,
        token=f["token"],
        seller=f["seller"],
        tokens_in=f["tokensIn"],
        eth_out=f["ethOut"],
        new_reserve_base=f["newReserveETH"],
        new_reserve_quote=f["newReserveTokens"],
    )


def _build_graduated(ref: LogRef, f: dict[str, Any]) -> TokenGraduated:
    return TokenGraduated(
        ref=ref,
        token=f["token"],
        pool=f["pool"],
        base_liquidity=f["ethLiquidity"],
        quote_liquidity=f["tokenLiquidity"],
        position_id=f["positionId"],
    )


_SPECS: tuple[_EventSpec, ...] = (
    _EventSpec(EventKind.CREATED, TOKEN_CREATED_ABI, _build_created),
    _EventSpec(EventKind.PURCHASED, TOKENS_PURCHASED_ABI, _build_purchased),
    _EventSpec(EventKind.SOLD, TOKENS_SOLD_ABI, _build_sold),
    _EventSpec(EventKind.GRADUATED, TOKEN_GRADUATED_ABI, _build_graduated),
)


class EventDecoder:
    """Decodes factory logs into typed events.

    Example:
        ```python
        decoder = EventDecoder()
        for raw in logs:
            event = decoder.decode(raw)
            if event is None:
                continue
        ```
    """

    def __init__(self) -> None:
        self._by_topic: dict[bytes, _EventSpec] = {spec.topic0: spec for spec in _SPECS}
        self._by_kind: dict[EventKind, _EventSpec] = {spec.kind: spec for spec in _SPECS}

    def topic_for(self, kind: EventKind) -> bytes:
        return self._by_kind[kind].topic0

    def signature_for(self, kind: EventKind) -> str:
        return event_signature(self._by_kind[kind].abi)

    @property
    def topics(self) -> dict[EventKind, bytes]:
        return {kind: spec.topic0 for kind, spec in self._by_kind.items()}

    def decode(self, log: RawLog, *, expected: EventKind | None = None) -> FactoryEvent | None:
        """Decode a single log, or return None if it is not a well-formed factory event."""
        topic0 = log.topic0
        spec = self._by_topic.get(topic0) if topic0 is not None else None
        if spec is None:
            logger.debug(
                "Unrecognized log topic0=%s tx=%s index=%s",
                to_hex(topic0) if topic0 else None,
                log.tx_hash,
                log.log_index,
            )
            return None
        if expected is not None and spec.kind is not expected:
            logger.warning(
                "Log kind mismatch (expected %s, got %s) tx=%s index=%s",
                expected.value,
                spec.kind.value,
                log.tx_hash,
                log.log_index,
            )
            return None

        try:
            fields = self._decode_fields(spec, log)
        except Exception as e:
            logger.warning(
                "Failed to decode %s log tx=%s index=%s: %s",
                spec.kind.value,
                log.tx_hash,
                log.log_index,
                e,
            )
            return None

        ref = LogRef(block_number=log.block_number, log_index=log.log_index, tx_hash=log.tx_hash)
        return spec.build(ref, fields)

    def decode_many(self, logs: Iterable[RawLog]) -> list[FactoryEvent]:
        events: list[FactoryEvent] = []
        for log in logs:
            event = self.decode(log)
            if event is not None:
                events.append(event)
        return events

    def decode_receipt(
        self, receipt: dict[str, Any], *, address: str | None = None
    ) -> list[FactoryEvent]:
        """Decode every factory event in a transaction receipt.

        If `address` is given, logs emitted by any other contract are skipped.
        """
        raw_logs: list[RawLog] = []
        for log in receipt.get("logs") or []:
            entry = dict(log)
            entry.setdefault("transactionHash", receipt.get("transactionHash"))
            entry.setdefault("blockNumber", receipt.get("blockNumber"))
            try:
                raw = RawLog.from_rpc(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed receipt log: %s", e)
                continue
            if address is not None and raw.address != address.lower():
                continue
            raw_logs.append(raw)
        return self.decode_many(raw_logs)

    @staticmethod
    def _decode_fields(spec: _EventSpec, log: RawLog) -> dict[str, Any]:
        indexed = spec.indexed
        if len(log.topics) != 1 + len(indexed):
            raise ValueError(
                f"expected {1 + len(indexed)} topics, got {len(log.topics)}"
            )

        out: dict[str, Any] = {}
        for inp, topic in zip(indexed, log.topics[1:], strict=True):
            if len(topic) != 32:
                raise ValueError(f"Expected 32-byte topic, got len={len(topic)}")
            if inp["type"] != "address":
                raise ValueError(f"Unsupported indexed type {inp['type']!r}")
            # Indexed address is left-zero-padded to 32 bytes.
            out[inp["name"]] = normalize_address("0x" + topic[-20:].hex())

        non_indexed = spec.non_indexed
        types = [i["type"] for i in non_indexed]
        values = abi_decode(types, log.data) if types else ()
        for inp, value in zip(non_indexed, values, strict=True):
            out[inp["name"]] = _normalize_value(inp["type"], value)
        return out


def _normalize_value(typ: str, value: Any) -> Any:
    if typ == "address":
        return normalize_address(str(value))
    if typ.startswith("uint") or typ.startswith("int"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Expected integer for {typ}, got {type(value).__name__}")
        return value
    if typ == "string":
        return str(value)
    return value
