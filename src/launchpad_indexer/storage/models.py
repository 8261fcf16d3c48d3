"""SQLAlchemy models for the mirrored launch-platform state.

Large on-chain quantities (reserves, trade amounts, fees) are stored as
decimal strings so that no value ever passes through a float.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 max has 78 decimal digits.
AMOUNT_LENGTH = 78


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class AgentModel(Base):
    """API-key-authenticated agent with a custody wallet (read-only for the indexer)."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    encrypted_pk: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TokenModel(Base):
    """Bonding-curve token, keyed by its contract address."""

    __tablename__ = "tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    creator_address: Mapped[str] = mapped_column(String(42), nullable=False)
    agent_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("agents.id"), nullable=True
    )
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    migrated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pool_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    reserve_base: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False, default="0")
    reserve_quote: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False, default="0")
    # (block, log_index) the reserves were taken from; NULL until the first trade.
    reserves_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reserves_log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_tokens_creator", "creator_address"),
        Index("idx_tokens_agent", "agent_id"),
        Index("idx_tokens_created_at", "created_at"),
    )


class TradeModel(Base):
    """Executed curve trade (immutable once inserted).

    Identity is the on-chain event: (tx_hash, log_index). Both the reconciler
    and the agent trade-execution path derive the same key.
    """

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    token_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("tokens.token_address"), nullable=False
    )
    agent_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("agents.id"), nullable=True
    )
    trader_address: Mapped[str] = mapped_column(String(42), nullable=False)
    direction: Mapped[str] = mapped_column(String(4), nullable=False)  # BUY/SELL

    amount_in: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    amount_out: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False)
    fee: Mapped[str] = mapped_column(String(AMOUNT_LENGTH), nullable=False, default="0")

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_trades_event"),
        CheckConstraint("direction IN ('BUY', 'SELL')", name="ck_trades_direction"),
        Index("idx_trades_token_ts", "token_address", "created_at"),
        Index("idx_trades_agent", "agent_id"),
        Index("idx_trades_trader_ts", "trader_address", "created_at"),
    )


class CommentModel(Base):
    """Agent comment on a token (never written by the indexer)."""

    __tablename__ = "comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    token_address: Mapped[str] = mapped_column(
        String(42), ForeignKey("tokens.token_address"), nullable=False
    )
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id"), nullable=False)
    author_address: Mapped[str] = mapped_column(String(42), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    parent_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("comments.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_comments_token_ts", "token_address", "created_at"),)


class IndexerCheckpointModel(Base):
    """Persisted reconciler cursor (last fully applied block) per named stream."""

    __tablename__ = "indexer_checkpoints"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_confirmed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
