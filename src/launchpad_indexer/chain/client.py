"""EVM chain client with retry, failover, rate limiting and bounded calls.

This module provides the reconciler's only view of the chain:
- Current block height
- Bounded-range log queries per event signature
- Point-in-time reserve/migration reads from the factory
- Block timestamps (immutable, cached in-process and optionally in Redis)
- Transaction receipt waits for the agent-facing write path

Every RPC call is bounded by a timeout; failures surface as ChainUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from launchpad_indexer.chain.abi import FACTORY_VIEW_ABI
from launchpad_indexer.chain.events import ZERO_ADDRESS, RawLog, normalize_address, to_hex
from launchpad_indexer.config import MAX_LOG_WINDOW_BLOCKS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120.0
BLOCK_TIMESTAMP_CACHE_TTL_SECONDS = 24 * 3600
BLOCK_TIMESTAMP_MEMORY_ENTRIES = 4096

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    TimeoutError,
    OSError,
    ValueError,
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class ChainUnavailable(ChainClientError):
    """Raised when the provider cannot serve a call (network, RPC error, timeout)."""


class ChainIdMismatch(ChainClientError):
    """Raised when the endpoint serves a different chain than configured."""


@dataclass(frozen=True)
class FreshReserves:
    reserve_base: int
    reserve_quote: int
    migrated: bool
    pool_address: str | None


@dataclass(frozen=True)
class StaleReserves:
    reason: str


ReserveRead = FreshReserves | StaleReserves


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Read-mostly client for the launch factory.

    Example:
        ```python
        client = ChainClient(
            "https://rpc.example",
            factory_address="0xfac...",
            request_timeout=10.0,
        )
        height = await client.current_height()
        logs = await client.get_logs(topic0, height - 10, height)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        factory_address: str,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            factory_address: Address of the token factory contract.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching immutable block data.
            request_timeout: Upper bound in seconds for a single RPC attempt.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._factory_address = normalize_address(factory_address)
        self._redis = redis
        self._timeout = request_timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._block_ts: OrderedDict[int, int] = OrderedDict()
        self._cache_prefix = "launchpad:"

    @property
    def factory_address(self) -> str:
        return self._factory_address

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempts(
        self,
        label: str,
        w3: AsyncWeb3[AsyncHTTPProvider],
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
        *,
        endpoint: str,
    ) -> tuple[bool, T | None, BaseException | None]:
        delay = self._retry_delay
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            try:
                result = await asyncio.wait_for(call(w3), timeout=self._timeout)
                return True, result, None
            except _TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    e or type(e).__name__,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        return False, None, last_error

    async def _execute_with_retry(
        self,
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Execute an RPC call with timeout, retry and failover.

        Raises:
            ChainUnavailable: If all retries on every endpoint fail.
        """
        await self._rate_limiter.acquire()

        last_error: BaseException | None = None
        if self._should_try_primary():
            ok, result, last_error = await self._attempts(label, self._w3, call, endpoint="Primary")
            if ok:
                self._primary_healthy = True
                return result  # type: ignore[return-value]
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback is not None:
            ok, result, err = await self._attempts(
                label, self._w3_fallback, call, endpoint="Fallback"
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", label)
                return result  # type: ignore[return-value]
            last_error = err or last_error

        raise ChainUnavailable(f"RPC call {label} failed after all retries: {last_error!r}")

    async def current_height(self) -> int:
        """Latest block number."""
        height = await self._execute_with_retry("block_number", lambda w3: w3.eth.block_number)
        return int(height)

    async def chain_id(self) -> int:
        chain_id = await self._execute_with_retry("chain_id", lambda w3: w3.eth.chain_id)
        return int(chain_id)

    async def verify_chain_id(self, expected: int) -> None:
        """Check that the endpoint serves the configured chain.

        Raises:
            ChainIdMismatch: If the endpoint reports a different chain ID.
            ChainUnavailable: If the chain ID cannot be read.
        """
        actual = await self.chain_id()
        if actual != expected:
            raise ChainIdMismatch(f"RPC endpoint serves chain {actual}, expected {expected}")
        logger.info("Connected to chain %d", actual)

    async def get_logs(
        self,
        topic0: bytes,
        from_block: int,
        to_block: int,
        *,
        address: str | None = None,
    ) -> list[RawLog]:
        """Fetch logs for one event signature over an inclusive block range.

        Raises:
            ValueError: If the range is empty or wider than the provider ceiling.
            ChainUnavailable: If the provider cannot serve the query.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range [{from_block}, {to_block}]")
        if to_block - from_block + 1 > MAX_LOG_WINDOW_BLOCKS:
            raise ValueError(
                f"Block range [{from_block}, {to_block}] exceeds {MAX_LOG_WINDOW_BLOCKS} blocks"
            )

        filter_params: dict[str, Any] = {
            "address": AsyncWeb3.to_checksum_address(address or self._factory_address),
            "topics": [to_hex(topic0)],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        logs = await self._execute_with_retry("get_logs", lambda w3: w3.eth.get_logs(filter_params))
        return [RawLog.from_rpc(dict(log)) for log in logs]

    async def read_reserves(self, token_address: str) -> ReserveRead:
        """Best-effort read of a token's reserves and migration state.

        Never raises; any failure is reported as StaleReserves so callers keep
        their previously mirrored values.
        """
        token = AsyncWeb3.to_checksum_address(normalize_address(token_address))
        factory = AsyncWeb3.to_checksum_address(self._factory_address)

        def _call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Awaitable[Any]:
            contract = w3.eth.contract(address=factory, abi=FACTORY_VIEW_ABI)
            return contract.functions.getTokenInfo(token).call()

        try:
            info = await self._execute_with_retry("getTokenInfo", _call)
            _creator, reserve_eth, reserve_tokens, _fees, graduated, pool, _position = info
            pool_address = normalize_address(str(pool))
        except ChainClientError as e:
            return StaleReserves(reason=str(e))
        except (TypeError, ValueError) as e:
            return StaleReserves(reason=f"unexpected getTokenInfo output: {e}")
        except Exception as e:
            logger.warning("getTokenInfo for %s failed unexpectedly: %r", token_address, e)
            return StaleReserves(reason=f"{type(e).__name__}: {e}")

        return FreshReserves(
            reserve_base=int(reserve_eth),
            reserve_quote=int(reserve_tokens),
            migrated=bool(graduated),
            pool_address=None if pool_address == ZERO_ADDRESS else pool_address,
        )

    async def get_block_timestamp(self, block_number: int) -> int:
        """Unix timestamp of a block (cached; blocks are immutable)."""
        cached = self._block_ts.get(block_number)
        if cached is not None:
            self._block_ts.move_to_end(block_number)
            return cached

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        value = await self._get_cached(cache_key)
        if value is None:
            block = await self._execute_with_retry(
                "get_block", lambda w3: w3.eth.get_block(block_number)
            )
            ts = int(block["timestamp"])
            await self._set_cached(cache_key, str(ts), ttl=BLOCK_TIMESTAMP_CACHE_TTL_SECONDS)
        else:
            ts = int(value)

        self._block_ts[block_number] = ts
        if len(self._block_ts) > BLOCK_TIMESTAMP_MEMORY_ENTRIES:
            self._block_ts.popitem(last=False)
        return ts

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        timeout: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        """Wait for a submitted transaction to be mined and return its receipt."""
        try:
            receipt = await asyncio.wait_for(
                self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout),
                timeout=timeout + self._timeout,
            )
        except _TRANSIENT_ERRORS as e:
            raise ChainUnavailable(f"Receipt for {tx_hash} unavailable: {e!r}") from e
        out = dict(receipt)
        out["logs"] = [dict(log) for log in out.get("logs") or []]
        return out

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def health_check(self) -> bool:
        try:
            await self.current_height()
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
