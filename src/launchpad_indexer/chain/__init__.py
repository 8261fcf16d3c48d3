"""Chain access layer - RPC client, factory ABI and event decoding."""

from launchpad_indexer.chain.client import (
    ChainClient,
    ChainClientError,
    ChainIdMismatch,
    ChainUnavailable,
    FreshReserves,
    ReserveRead,
    StaleReserves,
)
from launchpad_indexer.chain.decoder import EventDecoder
from launchpad_indexer.chain.events import (
    EventKind,
    FactoryEvent,
    LogRef,
    RawLog,
    TokenCreated,
    TokenGraduated,
    TokensPurchased,
    TokensSold,
    causal_order,
    chronological_order,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainIdMismatch",
    "ChainUnavailable",
    "EventDecoder",
    "EventKind",
    "FactoryEvent",
    "FreshReserves",
    "LogRef",
    "RawLog",
    "ReserveRead",
    "StaleReserves",
    "TokenCreated",
    "TokenGraduated",
    "TokensPurchased",
    "TokensSold",
    "causal_order",
    "chronological_order",
]
