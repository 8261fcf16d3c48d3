"""Tests for the receipt write path."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from conftest import (
    CREATOR,
    OTHER_TOKEN,
    TOKEN,
    TRADER,
    FakeChain,
    LogBuilder,
    RecordingSubscriber,
    receipt_for,
    tx,
)

from launchpad_indexer.chain.curve import TOTAL_SUPPLY_UNITS
from launchpad_indexer.chain.events import RawLog
from launchpad_indexer.indexer.receipts import ReceiptError, ReceiptRecorder
from launchpad_indexer.indexer.reconciler import Reconciler
from launchpad_indexer.storage.repos import BUY, SELL, TokenRepository, TradeRepository

AGENT_ID = "agent-1"


@pytest.fixture
def recorder(chain, session_factory, notifier) -> ReceiptRecorder:
    return ReceiptRecorder(chain, session_factory, notifier=notifier)


def _trade_logs(logs: LogBuilder, *, token: str = TOKEN, block: int = 600) -> list[RawLog]:
    hash_ = tx(4242)
    bought = logs.purchased(
        token,
        eth_in=10**18,
        tokens_out=10**21,
        new_reserve_base=10**18,
        new_reserve_quote=TOTAL_SUPPLY_UNITS - 10**21,
        block=block,
        log_index=0,
        tx_hash=hash_,
    )
    sold = logs.sold(
        token,
        tokens_in=10**20,
        eth_out=10**17,
        new_reserve_base=9 * 10**17,
        new_reserve_quote=TOTAL_SUPPLY_UNITS - 9 * 10**20,
        block=block,
        log_index=1,
        tx_hash=hash_,
    )
    return [bought, sold]


class TestRecordDeploy:
    @pytest.mark.asyncio
    async def test_inserts_token_and_broadcasts(
        self,
        recorder: ReceiptRecorder,
        logs: LogBuilder,
        notifier,
        subscriber: RecordingSubscriber,
    ) -> None:
        await notifier.subscribe(subscriber)

        token = await recorder.record_deploy(receipt_for([logs.created(block=600)]), AGENT_ID)

        assert token.token_address == TOKEN
        assert token.agent_id == AGENT_ID
        assert token.creator_address == CREATOR
        assert token.reserve_base == "0"
        assert token.reserve_quote == str(TOTAL_SUPPLY_UNITS)
        pushed = subscriber.messages[1:]
        assert [m["type"] for m in pushed] == ["event", "stats"]
        assert pushed[0]["data"]["type"] == "deploy"
        assert pushed[0]["data"]["agentId"] == AGENT_ID
        assert pushed[1]["data"]["totalTokens"] == 1

    @pytest.mark.asyncio
    async def test_repeat_is_silent(
        self,
        recorder: ReceiptRecorder,
        logs: LogBuilder,
        notifier,
        subscriber: RecordingSubscriber,
    ) -> None:
        receipt = receipt_for([logs.created(block=600)])
        await recorder.record_deploy(receipt, AGENT_ID)
        await notifier.subscribe(subscriber)

        token = await recorder.record_deploy(receipt, AGENT_ID)

        assert token.token_address == TOKEN
        assert len(subscriber.messages) == 1

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, recorder: ReceiptRecorder, logs: LogBuilder) -> None:
        with pytest.raises(ReceiptError):
            await recorder.record_deploy(receipt_for([logs.created()], status=0), AGENT_ID)

    @pytest.mark.asyncio
    async def test_missing_created_event(self, recorder: ReceiptRecorder, logs: LogBuilder) -> None:
        receipt = receipt_for(
            [logs.purchased(eth_in=1, tokens_out=1, new_reserve_base=1, new_reserve_quote=1)]
        )
        with pytest.raises(ReceiptError):
            await recorder.record_deploy(receipt, AGENT_ID)

    @pytest.mark.asyncio
    async def test_logs_from_other_contracts_are_ignored(
        self, recorder: ReceiptRecorder
    ) -> None:
        impostor = LogBuilder(factory="0x" + "99" * 20)
        with pytest.raises(ReceiptError):
            await recorder.record_deploy(receipt_for([impostor.created()]), AGENT_ID)

    @pytest.mark.asyncio
    async def test_confirm_deploy_waits_for_receipt(
        self, recorder: ReceiptRecorder, chain: FakeChain, logs: LogBuilder
    ) -> None:
        created = logs.created(block=600)
        chain.wait_for_receipt = AsyncMock(return_value=receipt_for([created]))

        token = await recorder.confirm_deploy(created.tx_hash, AGENT_ID)

        chain.wait_for_receipt.assert_awaited_once_with(created.tx_hash)
        assert token.agent_id == AGENT_ID


class TestRecordTrade:
    @pytest.mark.asyncio
    async def test_records_every_trade_in_receipt(
        self, recorder: ReceiptRecorder, logs: LogBuilder, session_factory
    ) -> None:
        await recorder.record_deploy(receipt_for([logs.created(block=599)]), AGENT_ID)

        trades = await recorder.record_trade(receipt_for(_trade_logs(logs)), AGENT_ID)

        assert [t.direction for t in trades] == [BUY, SELL]
        assert all(t.agent_id == AGENT_ID for t in trades)
        assert all(t.trader_address == TRADER for t in trades)
        assert trades[0].amount_in == str(10**18)
        assert trades[1].amount_out == str(10**17)
        async with session_factory() as session:
            token = await TokenRepository(session).get(TOKEN)
        assert token is not None
        assert token.reserve_base == str(9 * 10**17)

    @pytest.mark.asyncio
    async def test_unknown_token_is_left_to_indexer(
        self, recorder: ReceiptRecorder, logs: LogBuilder, session_factory
    ) -> None:
        receipt = receipt_for(_trade_logs(logs, token=OTHER_TOKEN))
        trades = await recorder.record_trade(receipt, AGENT_ID)

        assert trades == []
        async with session_factory() as session:
            assert await TradeRepository(session).list_for_token(OTHER_TOKEN) == []

    @pytest.mark.asyncio
    async def test_no_trade_event(self, recorder: ReceiptRecorder, logs: LogBuilder) -> None:
        with pytest.raises(ReceiptError):
            await recorder.record_trade(receipt_for([logs.created()]), AGENT_ID)

    @pytest.mark.asyncio
    async def test_indexer_replay_after_write_path_is_a_no_op(
        self,
        recorder: ReceiptRecorder,
        chain: FakeChain,
        logs: LogBuilder,
        session_factory,
        notifier,
        subscriber: RecordingSubscriber,
    ) -> None:
        created = logs.created(block=599)
        trade_logs = _trade_logs(logs)
        await recorder.record_deploy(receipt_for([created]), AGENT_ID)
        await recorder.record_trade(receipt_for(trade_logs), AGENT_ID)
        chain.logs = [created, *trade_logs]
        await notifier.subscribe(subscriber)

        result = await Reconciler(
            chain, session_factory, notifier, refresh_reserves=False
        ).tick()

        assert result.applied == 0
        assert result.duplicates == 3
        assert len(subscriber.messages) == 1
        async with session_factory() as session:
            trades = await TradeRepository(session).list_for_token(TOKEN)
        assert {t.agent_id for t in trades} == {AGENT_ID}
