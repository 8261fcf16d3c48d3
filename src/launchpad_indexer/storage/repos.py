"""Repository pattern implementations for the mirror store.

Every write that mirrors an on-chain event is an idempotent insert keyed by
the event's natural identity, so replaying a block range is always a no-op.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from launchpad_indexer.chain.curve import agent_fee_share, format_eth
from launchpad_indexer.storage.models import (
    AMOUNT_LENGTH,
    AgentModel,
    CommentModel,
    IndexerCheckpointModel,
    TokenModel,
    TradeModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

BUY = "BUY"
SELL = "SELL"

# Position recorded for a direct contract read: after every log in its block.
READ_LOG_INDEX = 2**31 - 1


def trade_id_for(tx_hash: str, log_index: int) -> str:
    """Deterministic trade id derived from the emitting log."""
    return f"{tx_hash.lower()}:{log_index}"


def _older_reserves(block_number: int, log_index: int) -> sa.ColumnElement[bool]:
    """Rows whose mirrored reserves come from before (block_number, log_index)."""
    return (
        TokenModel.reserves_block.is_(None)
        | (TokenModel.reserves_block < block_number)
        | (
            (TokenModel.reserves_block == block_number)
            & (TokenModel.reserves_log_index < log_index)
        )
    )


async def _insert_ignore(
    session: AsyncSession, model: type[Any], values: dict[str, Any], index_elements: list[str]
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING; returns True when a row was written."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    await session.flush()
    return bool(result.rowcount and result.rowcount > 0)


@dataclass
class TokenDTO:
    """Data transfer object for mirrored tokens."""

    token_address: str
    name: str
    symbol: str
    creator_address: str
    agent_id: str | None = None
    tx_hash: str | None = None
    migrated: bool = False
    pool_address: str | None = None
    reserve_base: str = "0"
    reserve_quote: str = "0"
    reserves_block: int | None = None
    reserves_log_index: int | None = None
    created_at: datetime | None = None
    id: str | None = None

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            id=model.id,
            token_address=model.token_address,
            name=model.name,
            symbol=model.symbol,
            creator_address=model.creator_address,
            agent_id=model.agent_id,
            tx_hash=model.tx_hash,
            migrated=model.migrated,
            pool_address=model.pool_address,
            reserve_base=model.reserve_base,
            reserve_quote=model.reserve_quote,
            reserves_block=model.reserves_block,
            reserves_log_index=model.reserves_log_index,
            created_at=model.created_at,
        )


@dataclass
class TradeDTO:
    """Data transfer object for mirrored trades. Amounts are decimal strings."""

    token_address: str
    trader_address: str
    direction: str
    amount_in: str
    amount_out: str
    tx_hash: str
    log_index: int
    created_at: datetime
    fee: str = "0"
    agent_id: str | None = None
    block_number: int | None = None

    @property
    def id(self) -> str:
        return trade_id_for(self.tx_hash, self.log_index)

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            token_address=model.token_address,
            trader_address=model.trader_address,
            direction=model.direction,
            amount_in=model.amount_in,
            amount_out=model.amount_out,
            fee=model.fee,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            agent_id=model.agent_id,
            created_at=model.created_at,
        )


@dataclass
class AgentDTO:
    id: str
    name: str
    wallet_address: str
    api_key: str
    encrypted_pk: str
    description: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AgentModel) -> AgentDTO:
        return cls(
            id=model.id,
            name=model.name,
            wallet_address=model.wallet_address,
            api_key=model.api_key,
            encrypted_pk=model.encrypted_pk,
            description=model.description,
            created_at=model.created_at,
        )


@dataclass
class CommentDTO:
    token_address: str
    agent_id: str
    author_address: str
    content: str
    parent_id: str | None = None
    id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: CommentModel) -> CommentDTO:
        return cls(
            id=model.id,
            token_address=model.token_address,
            agent_id=model.agent_id,
            author_address=model.author_address,
            content=model.content,
            parent_id=model.parent_id,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class TopToken:
    symbol: str
    name: str
    address: str
    vol_24h_wei: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "address": self.address,
            "vol24hEth": format_eth(self.vol_24h_wei),
        }


@dataclass(frozen=True)
class AggregateStats:
    """Point-in-time platform aggregates. Volumes are BUY-side ETH in wei."""

    total_tokens: int
    total_agents: int
    total_trades: int
    graduated: int
    vol_all_wei: int
    vol_24h_wei: int
    trades_24h: int
    trades_last_hour: int
    top_token: TopToken | None
    updated_at: datetime

    @property
    def agent_fees_wei(self) -> int:
        return agent_fee_share(self.vol_all_wei)

    @property
    def agent_fees_24h_wei(self) -> int:
        return agent_fee_share(self.vol_24h_wei)

    @property
    def trades_per_min(self) -> str:
        return f"{self.trades_last_hour / 60:.2f}"

    def to_dict(self) -> dict[str, Any]:
        """Wire shape pushed to live clients."""
        return {
            "totalTokens": self.total_tokens,
            "totalAgents": self.total_agents,
            "totalTrades": self.total_trades,
            "graduated": self.graduated,
            "volAllEth": format_eth(self.vol_all_wei),
            "vol24hEth": format_eth(self.vol_24h_wei),
            "agentFeesEth": format_eth(self.agent_fees_wei),
            "agentFees24hEth": format_eth(self.agent_fees_24h_wei),
            "trades24h": self.trades_24h,
            "tradesPerMin": self.trades_per_min,
            "topToken": self.top_token.to_dict() if self.top_token else None,
            "updatedAt": self.updated_at.isoformat().replace("+00:00", "Z"),
        }


class TokenRepository:
    """Repository for mirrored tokens."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_address: str) -> TokenDTO | None:
        result = await self.session.execute(
            select(TokenModel).where(TokenModel.token_address == token_address.lower())
        )
        model = result.scalar_one_or_none()
        return TokenDTO.from_model(model) if model else None

    async def exists(self, token_address: str) -> bool:
        result = await self.session.execute(
            select(TokenModel.id).where(TokenModel.token_address == token_address.lower())
        )
        return result.scalar_one_or_none() is not None

    async def upsert_on_create(self, dto: TokenDTO) -> bool:
        """Insert the token if its address is new. Returns False for a duplicate."""
        values = {
            "id": dto.id or str(uuid.uuid4()),
            "token_address": dto.token_address.lower(),
            "name": dto.name,
            "symbol": dto.symbol,
            "creator_address": dto.creator_address.lower(),
            "agent_id": dto.agent_id,
            "tx_hash": dto.tx_hash,
            "migrated": dto.migrated,
            "pool_address": dto.pool_address.lower() if dto.pool_address else None,
            "reserve_base": dto.reserve_base,
            "reserve_quote": dto.reserve_quote,
            "created_at": dto.created_at or datetime.now(UTC),
        }
        return await _insert_ignore(self.session, TokenModel, values, ["token_address"])

    async def advance_reserves(
        self,
        token_address: str,
        *,
        reserve_base: str,
        reserve_quote: str,
        block_number: int,
        log_index: int,
    ) -> bool:
        """Take reserves from a trade log if it is newer than the mirrored position.

        Returns False when the mirror already holds reserves from the same or a
        later log, leaving them untouched.
        """
        result = await self.session.execute(
            update(TokenModel)
            .where(
                (TokenModel.token_address == token_address.lower())
                & _older_reserves(block_number, log_index)
            )
            .values(
                reserve_base=reserve_base,
                reserve_quote=reserve_quote,
                reserves_block=block_number,
                reserves_log_index=log_index,
            )
        )
        await self.session.flush()
        return bool(result.rowcount and result.rowcount > 0)

    async def apply_reserve_update(
        self,
        token_address: str,
        *,
        reserve_base: str,
        reserve_quote: str,
        migrated: bool = False,
        pool_address: str | None = None,
        as_of_block: int | None = None,
    ) -> None:
        """Overwrite reserves from a direct contract read.

        `migrated` only latches on and `pool_address` is never cleared. With
        `as_of_block`, trade logs at or before that block no longer replace
        the read.
        """
        values: dict[str, Any] = {"reserve_base": reserve_base, "reserve_quote": reserve_quote}
        if migrated:
            values["migrated"] = True
        if pool_address:
            values["pool_address"] = pool_address.lower()
        await self.session.execute(
            update(TokenModel)
            .where(TokenModel.token_address == token_address.lower())
            .values(**values)
        )
        if as_of_block is not None:
            await self.session.execute(
                update(TokenModel)
                .where(
                    (TokenModel.token_address == token_address.lower())
                    & _older_reserves(as_of_block, READ_LOG_INDEX)
                )
                .values(reserves_block=as_of_block, reserves_log_index=READ_LOG_INDEX)
            )
        await self.session.flush()

    async def mark_migrated(self, token_address: str, pool_address: str | None) -> bool:
        """Latch `migrated`. Returns True only for the false->true transition."""
        values: dict[str, Any] = {"migrated": True}
        if pool_address:
            values["pool_address"] = pool_address.lower()
        result = await self.session.execute(
            update(TokenModel)
            .where(
                (TokenModel.token_address == token_address.lower())
                & (TokenModel.migrated.is_(False))
            )
            .values(**values)
        )
        await self.session.flush()
        return bool(result.rowcount and result.rowcount > 0)

    async def list_tokens(
        self,
        *,
        agent_id: str | None = None,
        creator: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TokenDTO]:
        stmt = select(TokenModel)
        if agent_id is not None:
            stmt = stmt.where(TokenModel.agent_id == agent_id)
        if creator is not None:
            stmt = stmt.where(TokenModel.creator_address == creator.lower())
        stmt = stmt.order_by(TokenModel.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return [TokenDTO.from_model(m) for m in result.scalars().all()]

    async def list_addresses(self) -> list[str]:
        result = await self.session.execute(select(TokenModel.token_address))
        return [row[0] for row in result.all()]

    async def count(self, *, migrated: bool | None = None) -> int:
        stmt = select(sa.func.count()).select_from(TokenModel)
        if migrated is not None:
            stmt = stmt.where(TokenModel.migrated.is_(migrated))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class TradeRepository:
    """Repository for mirrored trades."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_hash: str, log_index: int) -> TradeDTO | None:
        result = await self.session.execute(
            select(TradeModel).where(TradeModel.id == trade_id_for(tx_hash, log_index))
        )
        model = result.scalar_one_or_none()
        return TradeDTO.from_model(model) if model else None

    async def record(self, dto: TradeDTO) -> bool:
        """Insert the trade keyed by (tx_hash, log_index). Returns False for a duplicate."""
        if dto.direction not in (BUY, SELL):
            raise ValueError(f"Invalid trade direction: {dto.direction!r}")
        values = {
            "id": dto.id,
            "token_address": dto.token_address.lower(),
            "agent_id": dto.agent_id,
            "trader_address": dto.trader_address.lower(),
            "direction": dto.direction,
            "amount_in": dto.amount_in,
            "amount_out": dto.amount_out,
            "fee": dto.fee,
            "tx_hash": dto.tx_hash.lower(),
            "log_index": dto.log_index,
            "block_number": dto.block_number,
            "created_at": dto.created_at,
        }
        return await _insert_ignore(self.session, TradeModel, values, ["tx_hash", "log_index"])

    async def list_for_token(
        self, token_address: str, *, limit: int = 50, offset: int = 0
    ) -> list[TradeDTO]:
        result = await self.session.execute(
            select(TradeModel)
            .where(TradeModel.token_address == token_address.lower())
            .order_by(TradeModel.created_at.desc(), TradeModel.log_index.desc())
            .limit(limit)
            .offset(offset)
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def list_recent(
        self,
        *,
        direction: str | None = None,
        trader: str | None = None,
        before: datetime | None = None,
        limit: int = 50,
    ) -> list[TradeDTO]:
        stmt = select(TradeModel)
        if direction is not None:
            stmt = stmt.where(TradeModel.direction == direction.upper())
        if trader is not None:
            stmt = stmt.where(TradeModel.trader_address == trader.lower())
        if before is not None:
            stmt = stmt.where(TradeModel.created_at < before)
        stmt = stmt.order_by(TradeModel.created_at.desc(), TradeModel.log_index.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [TradeDTO.from_model(m) for m in result.scalars().all()]


class AgentRepository:
    """Read access to agents (writes belong to the registration flow)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_wallet(self, wallet_address: str) -> AgentDTO | None:
        result = await self.session.execute(
            select(AgentModel).where(sa.func.lower(AgentModel.wallet_address) == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        return AgentDTO.from_model(model) if model else None

    async def get_by_id(self, agent_id: str) -> AgentDTO | None:
        model = await self.session.get(AgentModel, agent_id)
        return AgentDTO.from_model(model) if model else None

    async def insert(self, dto: AgentDTO) -> AgentDTO:
        model = AgentModel(
            id=dto.id,
            name=dto.name,
            description=dto.description,
            api_key=dto.api_key,
            wallet_address=dto.wallet_address.lower(),
            encrypted_pk=dto.encrypted_pk,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return AgentDTO.from_model(model)

    async def count(self) -> int:
        result = await self.session.execute(select(sa.func.count()).select_from(AgentModel))
        return int(result.scalar_one())


class CommentRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: CommentDTO) -> CommentDTO:
        model = CommentModel(
            id=dto.id or str(uuid.uuid4()),
            token_address=dto.token_address.lower(),
            agent_id=dto.agent_id,
            author_address=dto.author_address.lower(),
            content=dto.content,
            parent_id=dto.parent_id,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return CommentDTO.from_model(model)

    async def list_for_token(
        self, token_address: str, *, limit: int = 50, offset: int = 0
    ) -> list[CommentDTO]:
        result = await self.session.execute(
            select(CommentModel)
            .where(CommentModel.token_address == token_address.lower())
            .order_by(CommentModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [CommentDTO.from_model(m) for m in result.scalars().all()]


class CheckpointRepository:
    """Persisted reconciler cursors, one row per named stream."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, name: str) -> int | None:
        model = await self.session.get(IndexerCheckpointModel, name)
        return model.last_confirmed_block if model else None

    async def set(self, name: str, block_number: int) -> None:
        now = datetime.now(UTC)
        values = {"name": name, "last_confirmed_block": block_number, "updated_at": now}
        set_ = {"last_confirmed_block": block_number, "updated_at": now}
        if self.session.get_bind().dialect.name == "postgresql":
            stmt = pg_insert(IndexerCheckpointModel).values(**values)
            stmt = stmt.on_conflict_do_update(index_elements=["name"], set_=set_)
        else:
            stmt = sqlite_insert(IndexerCheckpointModel).values(**values)
            stmt = stmt.on_conflict_do_update(index_elements=["name"], set_=set_)
        await self.session.execute(stmt)
        await self.session.flush()


class StatsRepository:
    """Aggregate statistics over the mirror.

    Amounts are stored as decimal strings. PostgreSQL sums them as NUMERIC;
    on other backends the sums are taken in Python over exact integers.
    Rows for the 24h figures are always filtered in SQL.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def snapshot(self, now: datetime | None = None) -> AggregateStats:
        now = now or datetime.now(UTC)
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)

        total_tokens = await TokenRepository(self.session).count()
        graduated = await TokenRepository(self.session).count(migrated=True)
        total_agents = await AgentRepository(self.session).count()

        total_trades = int(
            (await self.session.execute(select(sa.func.count()).select_from(TradeModel))).scalar_one()
        )
        trades_24h = await self._count_since(day_ago)
        trades_last_hour = await self._count_since(hour_ago)

        vol_all = await self._buy_volume()

        buys_24h = await self.session.execute(
            select(TradeModel.token_address, TradeModel.amount_in).where(
                (TradeModel.direction == BUY) & (TradeModel.created_at >= day_ago)
            )
        )
        vol_24h = 0
        by_token_24h: dict[str, int] = {}
        for token_address, amount_in in buys_24h.all():
            amount = int(amount_in)
            vol_24h += amount
            by_token_24h[token_address] = by_token_24h.get(token_address, 0) + amount

        top_token = None
        if by_token_24h:
            address, volume = max(by_token_24h.items(), key=lambda kv: (kv[1], kv[0]))
            token = await TokenRepository(self.session).get(address)
            if token is not None:
                top_token = TopToken(
                    symbol=token.symbol, name=token.name, address=token.token_address, vol_24h_wei=volume
                )

        return AggregateStats(
            total_tokens=total_tokens,
            total_agents=total_agents,
            total_trades=total_trades,
            graduated=graduated,
            vol_all_wei=vol_all,
            vol_24h_wei=vol_24h,
            trades_24h=trades_24h,
            trades_last_hour=trades_last_hour,
            top_token=top_token,
            updated_at=now,
        )

    async def _buy_volume(self) -> int:
        if self.session.get_bind().dialect.name == "postgresql":
            return int(await self.session.scalar(buy_volume_sum()) or 0)
        result = await self.session.execute(
            select(TradeModel.amount_in).where(TradeModel.direction == BUY)
        )
        return sum(int(amount) for amount in result.scalars())

    async def _count_since(self, since: datetime) -> int:
        result = await self.session.execute(
            select(sa.func.count()).select_from(TradeModel).where(TradeModel.created_at >= since)
        )
        return int(result.scalar_one())


def buy_volume_sum() -> sa.Select[tuple[Any]]:
    """Lifetime BUY-side volume as a NUMERIC sum (PostgreSQL)."""
    amount = sa.cast(TradeModel.amount_in, sa.Numeric(AMOUNT_LENGTH, 0))
    return select(sa.func.coalesce(sa.func.sum(amount), 0)).where(TradeModel.direction == BUY)
