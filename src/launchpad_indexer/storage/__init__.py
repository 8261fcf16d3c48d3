"""Storage layer - mirror store schema and repositories."""

from launchpad_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from launchpad_indexer.storage.models import (
    AgentModel,
    Base,
    CommentModel,
    IndexerCheckpointModel,
    TokenModel,
    TradeModel,
)
from launchpad_indexer.storage.repos import (
    AgentDTO,
    AgentRepository,
    AggregateStats,
    CheckpointRepository,
    CommentDTO,
    CommentRepository,
    StatsRepository,
    TokenDTO,
    TokenRepository,
    TopToken,
    TradeDTO,
    TradeRepository,
    trade_id_for,
)

__all__ = [
    "AgentDTO",
    "AgentModel",
    "AgentRepository",
    "AggregateStats",
    "Base",
    "CheckpointRepository",
    "CommentDTO",
    "CommentModel",
    "CommentRepository",
    "DatabaseManager",
    "IndexerCheckpointModel",
    "StatsRepository",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "TopToken",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "trade_id_for",
]
