"""Typed records for raw logs and decoded factory events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

ZERO_ADDRESS = "0x" + "0" * 40


def to_hex(value: Any) -> str:
    """Normalize HexBytes/bytes/str into a lower-case 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    hexed = value.hex() if hasattr(value, "hex") and not isinstance(value, str) else str(value)
    if not hexed.startswith("0x"):
        hexed = "0x" + hexed
    return hexed.lower()


def to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def normalize_address(address: str) -> str:
    """Canonical lower-case form used as the mirror's natural key."""
    addr = address.lower()
    if not addr.startswith("0x"):
        addr = "0x" + addr
    if len(addr) != 42:
        raise ValueError(f"Not a 20-byte address: {address!r}")
    return addr


class EventKind(str, Enum):
    """Closed set of factory events, declared in causal apply order."""

    CREATED = "created"
    PURCHASED = "purchased"
    SOLD = "sold"
    GRADUATED = "graduated"

    @property
    def rank(self) -> int:
        return _KIND_RANK[self]


_KIND_RANK = {kind: i for i, kind in enumerate(EventKind)}


@dataclass(frozen=True)
class RawLog:
    """A log as returned by eth_getLogs, reduced to what decoding needs."""

    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    log_index: int
    tx_hash: str

    @classmethod
    def from_rpc(cls, log: dict[str, Any]) -> RawLog:
        """Create a RawLog from a web3 log/receipt-log mapping."""
        return cls(
            address=to_hex(log["address"]),
            topics=tuple(to_bytes(t) for t in log.get("topics") or ()),
            data=to_bytes(log.get("data") or b""),
            block_number=int(log.get("blockNumber") or 0),
            log_index=int(log.get("logIndex") or 0),
            tx_hash=to_hex(log["transactionHash"]),
        )

    @property
    def topic0(self) -> bytes | None:
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class LogRef:
    """On-chain coordinates of a decoded event."""

    block_number: int
    log_index: int
    tx_hash: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class TokenCreated:
    kind: ClassVar[EventKind] = EventKind.CREATED

    ref: LogRef
    token: str
    creator: str
    name: str
    symbol: str
    timestamp: int


@dataclass(frozen=True)
class TokensPurchased:
    kind: ClassVar[EventKind] = EventKind.PURCHASED

    ref: LogRef
    token: str
    buyer: str
    eth_in: int
    tokens_out: int
    fee: int
    new_reserve_base: int
    new_reserve_quote: int


@dataclass(frozen=True)
class TokensSold:
    kind: ClassVar[EventKind] = EventKind.SOLD

    ref: LogRef
    token: str
    seller: str
    tokens_in: int
    eth_out: int
    new_reserve_base: int
    new_reserve_quote: int


@dataclass(frozen=True)
class TokenGraduated:
    kind: ClassVar[EventKind] = EventKind.GRADUATED

    ref: LogRef
    token: str
    pool: str
    base_liquidity: int
    quote_liquidity: int
    position_id: int


FactoryEvent = TokenCreated | TokensPurchased | TokensSold | TokenGraduated
TradeEvent = TokensPurchased | TokensSold


def causal_order(events: list[FactoryEvent]) -> list[FactoryEvent]:
    """Group by kind (Created, Purchased, Sold, Graduated), each group in log order."""
    return sorted(events, key=lambda e: (e.kind.rank, e.ref.sort_key))


def chronological_order(events: list[FactoryEvent]) -> list[FactoryEvent]:
    """Strict (block_number, log_index) order across all kinds."""
    return sorted(events, key=lambda e: e.ref.sort_key)
