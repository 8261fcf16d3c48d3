"""Wallet to agent attribution."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from launchpad_indexer.storage.repos import AgentRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class AgentResolver:
    """Maps a wallet address to the id of the agent that owns it.

    A miss is not an error: trades by external wallets are stored with a null
    agent id.
    """

    async def resolve(self, session: AsyncSession, wallet_address: str) -> str | None:
        if not wallet_address:
            return None
        agent = await AgentRepository(session).get_by_wallet(wallet_address)
        if agent is None:
            logger.debug("No agent for wallet %s", wallet_address.lower())
            return None
        return agent.id
