"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
launchpad indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

# Provider-imposed ceiling for a single eth_getLogs block range.
MAX_LOG_WINDOW_BLOCKS = 1000


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./launchpad.db",
        alias="DATABASE_URL",
        description="PostgreSQL (production) or SQLite (local/testing) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (block timestamp cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """EVM RPC and factory contract settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    chain_id: int = Field(
        default=4326,
        alias="CHAIN_ID",
        description="Chain ID of the network the factory is deployed on",
    )
    factory_contract: str | None = Field(
        default=None,
        alias="FACTORY_CONTRACT",
        description="Address of the bonding-curve token factory",
    )
    rpc_timeout_seconds: float = Field(
        default=10.0,
        alias="RPC_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="Upper bound for any single RPC call",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("factory_contract")
    @classmethod
    def validate_factory_contract(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError("FACTORY_CONTRACT must be a 0x-prefixed 20-byte address")
        int(v[2:], 16)
        return v.lower()


class IndexerSettings(BaseSettings):
    """Reconciler loop settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    poll_ms: int = Field(
        default=8000,
        alias="INDEXER_POLL_MS",
        ge=250,
        le=600_000,
        description="Timer period between reconciliation ticks",
    )
    lookback_blocks: int = Field(
        default=500,
        alias="INDEXER_LOOKBACK_BLOCKS",
        ge=0,
        le=1_000_000,
        description="How far behind the head the cursor starts on a fresh store",
    )
    window_blocks: int = Field(
        default=MAX_LOG_WINDOW_BLOCKS,
        alias="INDEXER_WINDOW_BLOCKS",
        ge=1,
        le=MAX_LOG_WINDOW_BLOCKS,
        description="Maximum block span fetched per tick",
    )
    event_order: Literal["causal", "chronological"] = Field(
        default="causal",
        alias="INDEXER_EVENT_ORDER",
        description=(
            "causal: Created, Purchased, Sold, Graduated groups per window; "
            "chronological: strict (block, log_index) order"
        ),
    )
    refresh_reserves: bool = Field(
        default=True,
        alias="INDEXER_REFRESH_RESERVES",
        description="Re-read reserves from the chain for tokens traded in a window",
    )

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_ms / 1000.0


class PushSettings(BaseSettings):
    """Live push channel (WebSocket) settings."""

    model_config = SettingsConfigDict(env_prefix="WS_", extra="ignore")

    host: str = Field(default="0.0.0.0", alias="WS_HOST")
    port: int = Field(default=3001, alias="WS_PORT", ge=1, le=65535)
    path: str = Field(default="/ws", alias="WS_PATH")
    heartbeat_seconds: int = Field(
        default=30,
        alias="WS_HEARTBEAT_SECONDS",
        ge=5,
        le=600,
        description="Liveness probe interval; unresponsive clients are dropped",
    )
    send_timeout_seconds: float = Field(
        default=5.0,
        alias="WS_SEND_TIMEOUT_SECONDS",
        gt=0,
        le=60,
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("WS_PATH must start with '/'")
        return v


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from launchpad_indexer.config import get_settings

        settings = get_settings()
        print(settings.chain.factory_contract)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    push: PushSettings = Field(
        default_factory=lambda: PushSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    @property
    def indexer_enabled(self) -> bool:
        """The reconciler needs both an RPC endpoint and the factory address."""
        return bool(self.chain.rpc_url and self.chain.factory_contract)

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self.chain.rpc_url or "(not set)",
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "chain_id": str(self.chain.chain_id),
                "factory_contract": self.chain.factory_contract or "(not set)",
            },
            "indexer": {
                "enabled": str(self.indexer_enabled),
                "poll_ms": str(self.indexer.poll_ms),
                "lookback_blocks": str(self.indexer.lookback_blocks),
                "window_blocks": str(self.indexer.window_blocks),
                "event_order": self.indexer.event_order,
            },
            "push": {
                "listen": f"ws://{self.push.host}:{self.push.port}{self.push.path}",
                "heartbeat_seconds": str(self.push.heartbeat_seconds),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
