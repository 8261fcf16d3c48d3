"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import time
from typing import Any

import pytest
from eth_abi import encode as abi_encode
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from launchpad_indexer.chain.client import (
    ChainIdMismatch,
    ChainUnavailable,
    FreshReserves,
    ReserveRead,
    StaleReserves,
)
from launchpad_indexer.chain.decoder import EventDecoder
from launchpad_indexer.chain.events import EventKind, RawLog
from launchpad_indexer.notifier.hub import Notifier
from launchpad_indexer.storage.models import Base

FACTORY = "0x" + "fa" * 20
TOKEN = "0x" + "11" * 20
OTHER_TOKEN = "0x" + "22" * 20
CREATOR = "0x" + "cc" * 20
TRADER = "0x" + "dd" * 20
POOL = "0x" + "ee" * 20


def tx(n: int) -> str:
    """Deterministic 32-byte transaction hash."""
    return "0x" + f"{n:064x}"


def _address_topic(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])


class LogBuilder:
    """Builds ABI-encoded factory logs as eth_getLogs would return them."""

    def __init__(self, factory: str = FACTORY) -> None:
        self.factory = factory
        self.decoder = EventDecoder()

    def _log(
        self, kind: EventKind, indexed: list[str], data: bytes, block: int, log_index: int, tx_hash: str
    ) -> RawLog:
        return RawLog(
            address=self.factory,
            topics=(self.decoder.topic_for(kind), *(_address_topic(a) for a in indexed)),
            data=data,
            block_number=block,
            log_index=log_index,
            tx_hash=tx_hash,
        )

    def created(
        self,
        token: str = TOKEN,
        creator: str = CREATOR,
        *,
        name: str = "Test Token",
        symbol: str = "TEST",
        timestamp: int | None = None,
        block: int = 100,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> RawLog:
        data = abi_encode(
            ["string", "string", "uint256"],
            [name, symbol, int(time.time()) if timestamp is None else timestamp],
        )
        return self._log(
            EventKind.CREATED, [token, creator], data, block, log_index, tx_hash or tx(block * 1000 + log_index)
        )

    def purchased(
        self,
        token: str = TOKEN,
        buyer: str = TRADER,
        *,
        eth_in: int,
        tokens_out: int,
        fee: int = 0,
        new_reserve_base: int,
        new_reserve_quote: int,
        block: int = 100,
        log_index: int = 1,
        tx_hash: str | None = None,
    ) -> RawLog:
        data = abi_encode(
            ["uint256"] * 5, [eth_in, tokens_out, fee, new_reserve_base, new_reserve_quote]
        )
        return self._log(
            EventKind.PURCHASED, [token, buyer], data, block, log_index, tx_hash or tx(block * 1000 + log_index)
        )

    def sold(
        self,
        token: str = TOKEN,
        seller: str = TRADER,
        *,
        tokens_in: int,
        eth_out: int,
        new_reserve_base: int,
        new_reserve_quote: int,
        block: int = 100,
        log_index: int = 2,
        tx_hash: str | None = None,
    ) -> RawLog:
        data = abi_encode(["uint256"] * 4, [tokens_in, eth_out, new_reserve_base, new_reserve_quote])
        return self._log(
            EventKind.SOLD, [token, seller], data, block, log_index, tx_hash or tx(block * 1000 + log_index)
        )

    def graduated(
        self,
        token: str = TOKEN,
        pool: str = POOL,
        *,
        eth_liquidity: int = 10**18,
        token_liquidity: int = 10**24,
        position_id: int = 7,
        block: int = 100,
        log_index: int = 3,
        tx_hash: str | None = None,
    ) -> RawLog:
        data = abi_encode(["uint256"] * 3, [eth_liquidity, token_liquidity, position_id])
        return self._log(
            EventKind.GRADUATED, [token, pool], data, block, log_index, tx_hash or tx(block * 1000 + log_index)
        )


def receipt_for(logs: list[RawLog], *, status: int = 1) -> dict[str, Any]:
    """Transaction receipt (web3 shape) wrapping the given logs."""
    first = logs[0]
    return {
        "transactionHash": bytes.fromhex(first.tx_hash[2:]),
        "blockNumber": first.block_number,
        "status": status,
        "logs": [
            {
                "address": log.address,
                "topics": list(log.topics),
                "data": log.data,
                "blockNumber": log.block_number,
                "logIndex": log.log_index,
                "transactionHash": bytes.fromhex(log.tx_hash[2:]),
            }
            for log in logs
        ],
    }


class FakeChain:
    """In-memory stand-in for ChainClient with a settable head and log set."""

    def __init__(self, height: int = 1000) -> None:
        self.height = height
        self.factory_address = FACTORY
        self.chain_id_value = 4326
        self.logs: list[RawLog] = []
        self.reserves: dict[str, ReserveRead] = {}
        self.get_logs_calls: list[tuple[int, int]] = []
        self.fail_get_logs_on: set[EventKind] = set()
        self.decoder = EventDecoder()
        self._now = int(time.time())

    async def current_height(self) -> int:
        return self.height

    async def verify_chain_id(self, expected: int) -> None:
        if self.chain_id_value != expected:
            raise ChainIdMismatch(f"RPC endpoint serves chain {self.chain_id_value}, expected {expected}")

    async def get_logs(
        self, topic0: bytes, from_block: int, to_block: int, *, address: str | None = None
    ) -> list[RawLog]:
        if to_block - from_block + 1 > 1000:
            raise ValueError("range too wide")
        self.get_logs_calls.append((from_block, to_block))
        for kind in self.fail_get_logs_on:
            if self.decoder.topic_for(kind) == topic0:
                raise ChainUnavailable("injected failure")
        return [
            log
            for log in self.logs
            if log.topic0 == topic0 and from_block <= log.block_number <= to_block
        ]

    async def read_reserves(self, token_address: str) -> ReserveRead:
        return self.reserves.get(token_address, StaleReserves(reason="not configured"))

    async def get_block_timestamp(self, block_number: int) -> int:
        return self._now - max(0, self.height - block_number)

    async def wait_for_receipt(self, tx_hash: str, *, timeout: float = 120.0) -> dict[str, Any]:
        raise NotImplementedError

    def set_fresh(self, token: str, base: int, quote: int, *, migrated: bool = False) -> None:
        self.reserves[token] = FreshReserves(
            reserve_base=base, reserve_quote=quote, migrated=migrated, pool_address=None
        )


class RecordingSubscriber:
    """Subscriber that keeps every decoded message it receives."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def send(self, message: str) -> None:
        self.messages.append(json.loads(message))

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["type"] == kind]


class FailingSubscriber:
    def __init__(self, fail_after: int = 0) -> None:
        self.sent = 0
        self.fail_after = fail_after

    async def send(self, message: str) -> None:
        if self.sent >= self.fail_after:
            raise ConnectionError("peer went away")
        self.sent += 1


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """In-memory SQLite engine shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def logs() -> LogBuilder:
    return LogBuilder()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def notifier(session_factory) -> Notifier:
    return Notifier(session_factory, send_timeout=1.0)


@pytest.fixture
def subscriber() -> RecordingSubscriber:
    return RecordingSubscriber()
