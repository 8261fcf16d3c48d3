"""Mirror writes for transactions the platform itself submitted.

When an agent deploys or trades through the platform, the confirmed receipt
is decoded with the same decoder and applied through the same idempotent
writes as the reconciler. The reconciler's later replay of those logs finds
the rows already present and is a no-op.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from launchpad_indexer.chain.decoder import EventDecoder
from launchpad_indexer.chain.events import TokenCreated, TokensPurchased, TokensSold, to_hex
from launchpad_indexer.indexer.applier import EventApplier
from launchpad_indexer.storage.repos import TokenDTO, TokenRepository, TradeDTO, TradeRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from launchpad_indexer.chain.client import ChainClient
    from launchpad_indexer.notifier.hub import Notifier

logger = logging.getLogger(__name__)


class ReceiptError(Exception):
    """Raised when a receipt does not contain the expected factory event."""


class ReceiptRecorder:
    """Records deploys and trades from confirmed transaction receipts.

    Example:
        ```python
        recorder = ReceiptRecorder(chain, session_factory, notifier=notifier)
        receipt = await chain.wait_for_receipt(tx_hash)
        token = await recorder.record_deploy(receipt, agent_id)
        ```
    """

    def __init__(
        self,
        chain: ChainClient,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        notifier: Notifier | None = None,
        decoder: EventDecoder | None = None,
        applier: EventApplier | None = None,
    ) -> None:
        self._chain = chain
        self._session_factory = session_factory
        self._notifier = notifier
        self._decoder = decoder or EventDecoder()
        self._applier = applier or EventApplier(chain, session_factory)

    async def record_deploy(self, receipt: dict[str, Any], agent_id: str) -> TokenDTO:
        """Insert the token created by a deploy transaction."""
        _check_status(receipt)
        created = [
            e
            for e in self._decoder.decode_receipt(receipt, address=self._chain.factory_address)
            if isinstance(e, TokenCreated)
        ]
        if not created:
            raise ReceiptError(
                f"No TokenCreated event in receipt {to_hex(receipt.get('transactionHash', b''))}"
            )
        event = created[0]
        payload = await self._applier.apply_created(event, agent_id=agent_id)
        await self._publish(payload)

        async with self._session_factory() as session:
            token = await TokenRepository(session).get(event.token)
        if token is None:
            raise ReceiptError(f"Token {event.token} missing after insert")
        return token

    async def record_trade(self, receipt: dict[str, Any], agent_id: str) -> list[TradeDTO]:
        """Insert every curve trade in a buy/sell transaction."""
        _check_status(receipt)
        trades = [
            e
            for e in self._decoder.decode_receipt(receipt, address=self._chain.factory_address)
            if isinstance(e, (TokensPurchased, TokensSold))
        ]
        if not trades:
            raise ReceiptError(
                f"No trade event in receipt {to_hex(receipt.get('transactionHash', b''))}"
            )

        recorded: list[TradeDTO] = []
        for event in trades:
            async with self._session_factory() as session:
                known = await TokenRepository(session).exists(event.token)
            if not known:
                logger.warning(
                    "Trade for unknown token %s tx=%s; left to the indexer",
                    event.token,
                    event.ref.tx_hash,
                )
                continue
            payload = await self._applier.apply_trade(event, agent_id=agent_id)
            await self._publish(payload)
            async with self._session_factory() as session:
                trade = await TradeRepository(session).get(event.ref.tx_hash, event.ref.log_index)
            if trade is not None:
                recorded.append(trade)
        return recorded

    async def confirm_deploy(self, tx_hash: str, agent_id: str) -> TokenDTO:
        receipt = await self._chain.wait_for_receipt(tx_hash)
        return await self.record_deploy(receipt, agent_id)

    async def confirm_trade(self, tx_hash: str, agent_id: str) -> list[TradeDTO]:
        receipt = await self._chain.wait_for_receipt(tx_hash)
        return await self.record_trade(receipt, agent_id)

    async def _publish(self, payload: dict[str, Any] | None) -> None:
        if payload is None or self._notifier is None:
            return
        await self._notifier.broadcast("event", payload)
        await self._notifier.broadcast_stats()


def _check_status(receipt: dict[str, Any]) -> None:
    status = receipt.get("status")
    if status is not None and int(status) == 0:
        raise ReceiptError(f"Transaction {to_hex(receipt.get('transactionHash', b''))} reverted")
