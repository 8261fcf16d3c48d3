"""Applies decoded factory events to the mirror store.

Each apply runs in its own committed transaction and returns the push payload
describing the change, or None when the event had already been applied.
Shared by the reconciler and the receipt write path so both produce the same
rows under the same dedup keys.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from launchpad_indexer.chain.client import FreshReserves
from launchpad_indexer.chain.curve import (
    TOTAL_SUPPLY_UNITS,
    Reserves,
    format_ether,
    reserves_consistent,
)
from launchpad_indexer.chain.events import (
    FactoryEvent,
    TokenCreated,
    TokenGraduated,
    TokensPurchased,
    TokensSold,
    TradeEvent,
)
from launchpad_indexer.indexer.attribution import AgentResolver
from launchpad_indexer.storage.repos import (
    BUY,
    SELL,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from launchpad_indexer.chain.client import ChainClient

logger = logging.getLogger(__name__)


def _iso(ts: datetime) -> str:
    return ts.astimezone(UTC).isoformat().replace("+00:00", "Z")


class EventApplier:
    """Idempotent mirror writes for each factory event kind."""

    def __init__(
        self,
        chain: ChainClient,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        resolver: AgentResolver | None = None,
    ) -> None:
        self._chain = chain
        self._session_factory = session_factory
        self._resolver = resolver or AgentResolver()

    async def apply(self, event: FactoryEvent, *, agent_id: str | None = None) -> dict[str, Any] | None:
        """Apply one event. A known `agent_id` skips wallet attribution."""
        if isinstance(event, TokenCreated):
            return await self.apply_created(event, agent_id=agent_id)
        if isinstance(event, (TokensPurchased, TokensSold)):
            return await self.apply_trade(event, agent_id=agent_id)
        if isinstance(event, TokenGraduated):
            return await self.apply_graduated(event)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    async def _attribute(self, session: AsyncSession, wallet: str, agent_id: str | None) -> str | None:
        if agent_id is not None:
            return agent_id
        return await self._resolver.resolve(session, wallet)

    async def apply_created(
        self, event: TokenCreated, *, agent_id: str | None = None
    ) -> dict[str, Any] | None:
        if event.timestamp:
            created_at = datetime.fromtimestamp(event.timestamp, UTC)
        else:
            created_at = datetime.fromtimestamp(
                await self._chain.get_block_timestamp(event.ref.block_number), UTC
            )

        async with self._session_factory() as session:
            agent_id = await self._attribute(session, event.creator, agent_id)
            inserted = await TokenRepository(session).upsert_on_create(
                TokenDTO(
                    token_address=event.token,
                    name=event.name,
                    symbol=event.symbol,
                    creator_address=event.creator,
                    agent_id=agent_id,
                    tx_hash=event.ref.tx_hash,
                    reserve_base="0",
                    reserve_quote=str(TOTAL_SUPPLY_UNITS),
                    created_at=created_at,
                )
            )
            await session.commit()

        if not inserted:
            return None
        logger.info("TokenCreated: %s (%s) creator=%s", event.symbol, event.token, event.creator)
        return {
            "type": "deploy",
            "token": {
                "address": event.token,
                "name": event.name,
                "symbol": event.symbol,
                "creator": event.creator,
            },
            "agentId": agent_id,
            "ts": _iso(created_at),
            "txHash": event.ref.tx_hash,
            "blockNumber": event.ref.block_number,
        }

    async def apply_trade(
        self, event: TradeEvent, *, agent_id: str | None = None
    ) -> dict[str, Any] | None:
        ts = await self._chain.get_block_timestamp(event.ref.block_number)
        created_at = datetime.fromtimestamp(ts, UTC)

        if isinstance(event, TokensPurchased):
            direction, trader = BUY, event.buyer
            amount_in, amount_out, fee = event.eth_in, event.tokens_out, event.fee
            amount_eth = event.eth_in
        else:
            direction, trader = SELL, event.seller
            amount_in, amount_out, fee = event.tokens_in, event.eth_out, 0
            amount_eth = event.eth_out

        async with self._session_factory() as session:
            tokens = TokenRepository(session)
            token = await tokens.get(event.token)
            agent_id = await self._attribute(session, trader, agent_id)
            inserted = await TradeRepository(session).record(
                TradeDTO(
                    token_address=event.token,
                    trader_address=trader,
                    direction=direction,
                    amount_in=str(amount_in),
                    amount_out=str(amount_out),
                    fee=str(fee),
                    tx_hash=event.ref.tx_hash,
                    log_index=event.ref.log_index,
                    block_number=event.ref.block_number,
                    agent_id=agent_id,
                    created_at=created_at,
                )
            )
            if inserted:
                advanced = await tokens.advance_reserves(
                    event.token,
                    reserve_base=str(event.new_reserve_base),
                    reserve_quote=str(event.new_reserve_quote),
                    block_number=event.ref.block_number,
                    log_index=event.ref.log_index,
                )
                if not advanced:
                    logger.debug(
                        "Mirrored reserves for %s are newer than tx=%s; left as is",
                        event.token,
                        event.ref.tx_hash,
                    )
            await session.commit()

        if not inserted:
            return None
        return {
            "type": "buy" if direction == BUY else "sell",
            "token": {
                "address": event.token,
                "symbol": token.symbol if token else "???",
                "name": token.name if token else "Unknown",
            },
            "trader": trader,
            "agentId": agent_id,
            "amountIn": str(amount_in),
            "amountOut": str(amount_out),
            "fee": str(fee),
            "amountEth": format_ether(amount_eth),
            "reserveBase": str(event.new_reserve_base),
            "reserveQuote": str(event.new_reserve_quote),
            "ts": _iso(created_at),
            "txHash": event.ref.tx_hash,
            "logIndex": event.ref.log_index,
            "blockNumber": event.ref.block_number,
        }

    async def apply_graduated(self, event: TokenGraduated) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            tokens = TokenRepository(session)
            transitioned = await tokens.mark_migrated(event.token, event.pool)
            token = await tokens.get(event.token) if transitioned else None
            await session.commit()

        if not transitioned:
            return None
        logger.info("TokenGraduated: %s pool=%s", event.token, event.pool)
        return {
            "type": "graduate",
            "token": {
                "address": event.token,
                "symbol": token.symbol if token else "???",
                "name": token.name if token else "Unknown",
            },
            "pool": event.pool,
            "ethLiquidity": str(event.base_liquidity),
            "tokenLiquidity": str(event.quote_liquidity),
            "positionId": str(event.position_id),
            "txHash": event.ref.tx_hash,
            "blockNumber": event.ref.block_number,
        }

    async def check_reserve_sequence(self, events: list[TradeEvent]) -> int:
        """Log trades whose emitted reserves do not follow from the previous pair.

        Each token's trades are walked in log order starting from the mirrored
        pair; trades at or before the mirrored position are skipped. Returns
        the number of mismatches.
        """
        by_token: dict[str, list[TradeEvent]] = {}
        for event in events:
            by_token.setdefault(event.token, []).append(event)

        mismatches = 0
        async with self._session_factory() as session:
            tokens = TokenRepository(session)
            for address, trades in by_token.items():
                token = await tokens.get(address)
                previous: Reserves | None = None
                position: tuple[int, int] | None = None
                if token is not None:
                    previous = Reserves(base=int(token.reserve_base), quote=int(token.reserve_quote))
                    if token.reserves_block is not None:
                        position = (token.reserves_block, token.reserves_log_index or 0)
                for event in sorted(trades, key=lambda e: e.ref.sort_key):
                    if position is not None and event.ref.sort_key <= position:
                        continue
                    if not reserves_consistent(previous, event):
                        mismatches += 1
                        assert previous is not None
                        logger.warning(
                            "Reserve transition mismatch for %s tx=%s: (%d, %d) -> (%d, %d)",
                            event.token,
                            event.ref.tx_hash,
                            previous.base,
                            previous.quote,
                            event.new_reserve_base,
                            event.new_reserve_quote,
                        )
                    previous = Reserves(base=event.new_reserve_base, quote=event.new_reserve_quote)
        return mismatches

    async def refresh_reserves(self, token: str, *, as_of_block: int | None = None) -> bool:
        """Overwrite a token's reserves with a direct read. False when the read is stale."""
        read = await self._chain.read_reserves(token)
        if not isinstance(read, FreshReserves):
            logger.warning(
                "Reserve refresh for %s is stale; keeping mirrored values: %s", token, read.reason
            )
            return False
        async with self._session_factory() as session:
            await TokenRepository(session).apply_reserve_update(
                token,
                reserve_base=str(read.reserve_base),
                reserve_quote=str(read.reserve_quote),
                migrated=read.migrated,
                pool_address=read.pool_address,
                as_of_block=as_of_block,
            )
            await session.commit()
        return True
