"""Initial schema: agents, tokens, trades, comments and indexer checkpoints.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Agents (registered and written by the agent API, read by the indexer)
    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("api_key", sa.String(128), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("encrypted_pk", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.UniqueConstraint("api_key"),
        sa.UniqueConstraint("wallet_address"),
    )

    # Tokens
    op.create_table(
        "tokens",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("creator_address", sa.String(42), nullable=False),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id"), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("migrated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pool_address", sa.String(42), nullable=True),
        sa.Column("reserve_base", sa.String(78), nullable=False, server_default="0"),
        sa.Column("reserve_quote", sa.String(78), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_address"),
    )
    op.create_index("idx_tokens_creator", "tokens", ["creator_address"])
    op.create_index("idx_tokens_agent", "tokens", ["agent_id"])
    op.create_index("idx_tokens_created_at", "tokens", ["created_at"])

    # Trades (one row per curve event, keyed by tx hash and log index)
    op.create_table(
        "trades",
        sa.Column("id", sa.String(80), nullable=False),
        sa.Column(
            "token_address", sa.String(42), sa.ForeignKey("tokens.token_address"), nullable=False
        ),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id"), nullable=True),
        sa.Column("trader_address", sa.String(42), nullable=False),
        sa.Column("direction", sa.String(4), nullable=False),
        sa.Column("amount_in", sa.String(78), nullable=False),
        sa.Column("amount_out", sa.String(78), nullable=False),
        sa.Column("fee", sa.String(78), nullable=False, server_default="0"),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_trades_event"),
        sa.CheckConstraint("direction IN ('BUY', 'SELL')", name="ck_trades_direction"),
    )
    op.create_index("idx_trades_token_ts", "trades", ["token_address", "created_at"])
    op.create_index("idx_trades_agent", "trades", ["agent_id"])
    op.create_index("idx_trades_trader_ts", "trades", ["trader_address", "created_at"])

    # Comments
    op.create_table(
        "comments",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column(
            "token_address", sa.String(42), sa.ForeignKey("tokens.token_address"), nullable=False
        ),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id"), nullable=False),
        sa.Column("author_address", sa.String(42), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("parent_id", sa.String(36), sa.ForeignKey("comments.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_comments_token_ts", "comments", ["token_address", "created_at"])

    # Reconciler cursor
    op.create_table(
        "indexer_checkpoints",
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("last_confirmed_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("indexer_checkpoints")
    op.drop_index("idx_comments_token_ts", table_name="comments")
    op.drop_table("comments")
    op.drop_index("idx_trades_trader_ts", table_name="trades")
    op.drop_index("idx_trades_agent", table_name="trades")
    op.drop_index("idx_trades_token_ts", table_name="trades")
    op.drop_table("trades")
    op.drop_index("idx_tokens_created_at", table_name="tokens")
    op.drop_index("idx_tokens_agent", table_name="tokens")
    op.drop_index("idx_tokens_creator", table_name="tokens")
    op.drop_table("tokens")
    op.drop_table("agents")
