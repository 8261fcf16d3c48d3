"""Tests for the chain-to-mirror reconciler."""

from __future__ import annotations

import asyncio
import logging

import pytest
from conftest import (
    CREATOR,
    OTHER_TOKEN,
    POOL,
    TOKEN,
    FakeChain,
    LogBuilder,
    RecordingSubscriber,
)

from launchpad_indexer.chain.curve import TOTAL_SUPPLY_UNITS
from launchpad_indexer.chain.events import EventKind
from launchpad_indexer.indexer.applier import EventApplier
from launchpad_indexer.indexer.reconciler import Reconciler
from launchpad_indexer.storage.repos import (
    CheckpointRepository,
    TokenDTO,
    TokenRepository,
    TradeRepository,
)

ETH = 10**18


@pytest.fixture
def reconciler(chain, session_factory, notifier) -> Reconciler:
    return Reconciler(chain, session_factory, notifier, refresh_reserves=False)


async def _seed_token(session_factory, address: str = TOKEN) -> None:
    async with session_factory() as session:
        await TokenRepository(session).upsert_on_create(
            TokenDTO(
                token_address=address,
                name="Seeded",
                symbol="SEED",
                creator_address=CREATOR,
                reserve_base="0",
                reserve_quote=str(TOTAL_SUPPLY_UNITS),
            )
        )
        await session.commit()


async def _token(session_factory, address: str = TOKEN):
    async with session_factory() as session:
        return await TokenRepository(session).get(address)


def _buy(logs: LogBuilder, *, block: int, token: str = TOKEN, eth_in: int = ETH, **kwargs):
    tokens_out = kwargs.pop("tokens_out", 10**21)
    return logs.purchased(
        token,
        eth_in=eth_in,
        tokens_out=tokens_out,
        new_reserve_base=kwargs.pop("new_reserve_base", eth_in),
        new_reserve_quote=kwargs.pop("new_reserve_quote", TOTAL_SUPPLY_UNITS - tokens_out),
        block=block,
        **kwargs,
    )


# ============================================================================
# Construction and bootstrap
# ============================================================================


class TestBootstrap:
    def test_rejects_invalid_arguments(self, chain, session_factory, notifier) -> None:
        with pytest.raises(ValueError):
            Reconciler(chain, session_factory, notifier, window_blocks=0)
        with pytest.raises(ValueError):
            Reconciler(chain, session_factory, notifier, lookback_blocks=-1)
        with pytest.raises(ValueError):
            Reconciler(chain, session_factory, notifier, event_order="random")  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_starts_lookback_behind_head(self, reconciler: Reconciler) -> None:
        state = await reconciler.bootstrap()
        assert state.last_confirmed_block == 500
        assert state.watched_tokens == set()

    @pytest.mark.asyncio
    async def test_lookback_clamped_at_genesis(self, session_factory, notifier) -> None:
        chain = FakeChain(height=120)
        state = await Reconciler(chain, session_factory, notifier).bootstrap()
        assert state.last_confirmed_block == 0

    @pytest.mark.asyncio
    async def test_resumes_from_checkpoint_with_known_tokens(
        self, reconciler: Reconciler, session_factory
    ) -> None:
        await _seed_token(session_factory)
        async with session_factory() as session:
            await CheckpointRepository(session).set("factory", 900)
            await session.commit()

        state = await reconciler.bootstrap()

        assert state.last_confirmed_block == 900
        assert state.watched_tokens == {TOKEN}


# ============================================================================
# Windows and cursor
# ============================================================================


class TestWindow:
    @pytest.mark.asyncio
    async def test_scans_cursor_to_head(self, reconciler: Reconciler, chain: FakeChain) -> None:
        result = await reconciler.tick()

        assert result.ok
        assert (result.from_block, result.to_block) == (501, 1000)
        assert set(chain.get_logs_calls) == {(501, 1000)}
        assert len(chain.get_logs_calls) == len(EventKind)
        assert reconciler.state is not None
        assert reconciler.state.last_confirmed_block == 1000

    @pytest.mark.asyncio
    async def test_window_is_bounded(self, session_factory, notifier) -> None:
        chain = FakeChain(height=5000)
        reconciler = Reconciler(
            chain, session_factory, notifier, lookback_blocks=4000, window_blocks=1000
        )

        first = await reconciler.tick()
        second = await reconciler.tick()

        assert (first.from_block, first.to_block) == (1001, 2000)
        assert (second.from_block, second.to_block) == (2001, 3000)

    @pytest.mark.asyncio
    async def test_nothing_to_do_at_head(self, reconciler: Reconciler, chain: FakeChain) -> None:
        await reconciler.tick()
        chain.get_logs_calls.clear()

        result = await reconciler.tick()

        assert result.ok
        assert result.from_block is None
        assert chain.get_logs_calls == []

    @pytest.mark.asyncio
    async def test_persists_checkpoint(self, reconciler: Reconciler, session_factory) -> None:
        await reconciler.tick()
        async with session_factory() as session:
            assert await CheckpointRepository(session).get("factory") == 1000

    @pytest.mark.asyncio
    async def test_failure_leaves_cursor_and_range_is_retried(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory
    ) -> None:
        chain.logs = [logs.created(block=600), _buy(logs, block=601)]
        chain.fail_get_logs_on = {EventKind.SOLD}

        failed = await reconciler.tick()

        assert failed.error is not None
        assert failed.applied == 0
        assert reconciler.state is not None
        assert reconciler.state.last_confirmed_block == 500
        assert await _token(session_factory) is None
        async with session_factory() as session:
            assert await CheckpointRepository(session).get("factory") is None

        chain.fail_get_logs_on.clear()
        retried = await reconciler.tick()

        assert retried.ok
        assert (retried.from_block, retried.to_block) == (501, 1000)
        assert retried.applied == 2
        assert reconciler.state.last_confirmed_block == 1000

    @pytest.mark.asyncio
    async def test_failure_mid_apply_is_replayed_without_rebroadcast(
        self,
        reconciler: Reconciler,
        chain: FakeChain,
        logs: LogBuilder,
        session_factory,
        notifier,
        subscriber: RecordingSubscriber,
        monkeypatch,
    ) -> None:
        chain.logs = [logs.created(block=600), _buy(logs, block=601), _buy(logs, block=602)]
        await notifier.subscribe(subscriber)

        applier = reconciler._applier
        apply_trade = applier.apply_trade
        calls = 0

        async def flaky_apply_trade(event, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("database went away")
            return await apply_trade(event, **kwargs)

        monkeypatch.setattr(applier, "apply_trade", flaky_apply_trade)

        failed = await reconciler.tick()

        assert failed.error == "database went away"
        assert failed.applied == 2
        assert reconciler.state is not None
        assert reconciler.state.last_confirmed_block == 500
        async with session_factory() as session:
            assert await CheckpointRepository(session).get("factory") is None
            assert len(await TradeRepository(session).list_for_token(TOKEN)) == 1
        first_events = [m["data"]["type"] for m in subscriber.of_type("event")]
        assert first_events == ["deploy", "buy"]

        chain.get_logs_calls.clear()
        retried = await reconciler.tick()

        assert retried.ok
        assert set(chain.get_logs_calls) == {(failed.from_block, failed.to_block)}
        assert retried.applied == 1
        assert retried.duplicates == 2
        assert reconciler.state.last_confirmed_block == 1000
        events = subscriber.of_type("event")
        assert len(events) == 3
        assert events[-1]["data"]["blockNumber"] == 602
        async with session_factory() as session:
            assert len(await TradeRepository(session).list_for_token(TOKEN)) == 2

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_leaves_cursor(
        self,
        reconciler: Reconciler,
        chain: FakeChain,
        logs: LogBuilder,
        session_factory,
        notifier,
        subscriber: RecordingSubscriber,
        monkeypatch,
    ) -> None:
        chain.logs = [logs.created(block=600), _buy(logs, block=601)]
        await notifier.subscribe(subscriber)
        set_checkpoint = CheckpointRepository.set
        failures = [RuntimeError("disk full")]

        async def flaky_set(self, name: str, block_number: int) -> None:
            if failures:
                raise failures.pop()
            await set_checkpoint(self, name, block_number)

        monkeypatch.setattr(CheckpointRepository, "set", flaky_set)

        failed = await reconciler.tick()

        assert failed.error == "disk full"
        assert reconciler.state is not None
        assert reconciler.state.last_confirmed_block == 500
        assert len(subscriber.of_type("event")) == 2

        retried = await reconciler.tick()

        assert retried.ok
        assert (retried.from_block, retried.to_block) == (failed.from_block, failed.to_block)
        assert retried.applied == 0
        assert retried.duplicates == 2
        assert len(subscriber.of_type("event")) == 2
        async with session_factory() as session:
            assert await CheckpointRepository(session).get("factory") == 1000


# ============================================================================
# Application semantics
# ============================================================================


class TestApplication:
    @pytest.mark.asyncio
    async def test_created_applied_before_earlier_trade(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory
    ) -> None:
        chain.logs = [_buy(logs, block=650), logs.created(block=700)]

        result = await reconciler.tick()

        assert result.applied == 2
        assert result.ignored == 0
        async with session_factory() as session:
            trades = await TradeRepository(session).list_for_token(TOKEN)
        assert len(trades) == 1

    @pytest.mark.asyncio
    async def test_chronological_order_skips_trade_before_create(
        self, chain: FakeChain, logs: LogBuilder, session_factory, notifier
    ) -> None:
        reconciler = Reconciler(
            chain, session_factory, notifier, event_order="chronological", refresh_reserves=False
        )
        chain.logs = [_buy(logs, block=650), logs.created(block=700)]

        result = await reconciler.tick()

        assert result.applied == 1
        assert result.ignored == 1

    @pytest.mark.asyncio
    async def test_unknown_token_is_ignored(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory
    ) -> None:
        chain.logs = [
            _buy(logs, block=600, token=OTHER_TOKEN),
            logs.graduated(OTHER_TOKEN, block=601),
        ]

        result = await reconciler.tick()

        assert result.ok
        assert result.applied == 0
        assert result.ignored == 2
        assert await _token(session_factory, OTHER_TOKEN) is None

    @pytest.mark.asyncio
    async def test_token_recorded_after_bootstrap_is_picked_up(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory
    ) -> None:
        await reconciler.bootstrap()
        await _seed_token(session_factory)
        chain.logs = [_buy(logs, block=600)]

        result = await reconciler.tick()

        assert result.applied == 1
        assert reconciler.state is not None
        assert TOKEN in reconciler.state.watched_tokens

    @pytest.mark.asyncio
    async def test_reserves_keep_every_digit(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory
    ) -> None:
        base = 123_456_789_123_456_789_123_456_789
        quote = TOTAL_SUPPLY_UNITS - 10**21 - 1
        chain.logs = [
            logs.created(block=600),
            _buy(logs, block=601, eth_in=base, new_reserve_base=base, new_reserve_quote=quote),
        ]

        await reconciler.tick()

        token = await _token(session_factory)
        assert token is not None
        assert token.reserve_base == str(base)
        assert token.reserve_quote == str(quote)

    @pytest.mark.asyncio
    async def test_migrated_never_reverts(
        self, chain: FakeChain, logs: LogBuilder, session_factory, notifier
    ) -> None:
        reconciler = Reconciler(chain, session_factory, notifier, refresh_reserves=True)
        chain.logs = [logs.created(block=600), logs.graduated(block=610)]
        await reconciler.tick()

        chain.height = 1100
        chain.logs.append(_buy(logs, block=1050))
        chain.set_fresh(TOKEN, 5, 6, migrated=False)
        result = await reconciler.tick()

        assert result.applied == 1
        assert result.refreshed == 1
        token = await _token(session_factory)
        assert token is not None
        assert token.migrated is True
        assert token.pool_address == POOL
        assert token.reserve_base == "5"

    @pytest.mark.asyncio
    async def test_stale_refresh_keeps_event_reserves(
        self, chain: FakeChain, logs: LogBuilder, session_factory, notifier
    ) -> None:
        reconciler = Reconciler(chain, session_factory, notifier, refresh_reserves=True)
        chain.logs = [logs.created(block=600), _buy(logs, block=601, new_reserve_base=777)]

        result = await reconciler.tick()

        assert result.ok
        assert result.refreshed == 0
        token = await _token(session_factory)
        assert token is not None
        assert token.reserve_base == "777"

    @pytest.mark.asyncio
    async def test_grouped_order_keeps_latest_reserves(
        self, chain: FakeChain, logs: LogBuilder, session_factory, notifier, caplog
    ) -> None:
        reconciler = Reconciler(chain, session_factory, notifier)
        chain.logs = [
            logs.created(block=600),
            _buy(logs, block=601, eth_in=10, tokens_out=100, new_reserve_base=10),
            logs.sold(
                tokens_in=40,
                eth_out=4,
                new_reserve_base=6,
                new_reserve_quote=TOTAL_SUPPLY_UNITS - 60,
                block=602,
            ),
            _buy(
                logs,
                block=603,
                eth_in=20,
                tokens_out=30,
                new_reserve_base=26,
                new_reserve_quote=TOTAL_SUPPLY_UNITS - 90,
            ),
        ]

        with caplog.at_level(logging.WARNING):
            result = await reconciler.tick()

        assert result.applied == 4
        assert result.refreshed == 0
        token = await _token(session_factory)
        assert token is not None
        assert token.reserve_base == "26"
        assert token.reserve_quote == str(TOTAL_SUPPLY_UNITS - 90)
        assert token.reserves_block == 603
        assert "Reserve transition mismatch" not in caplog.text

    @pytest.mark.asyncio
    async def test_late_replay_does_not_roll_back_write_path_reserves(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory
    ) -> None:
        created = logs.created(block=600)
        earlier = _buy(logs, block=601, eth_in=10, new_reserve_base=10)
        later = _buy(logs, block=640, eth_in=50, new_reserve_base=60)
        applier = EventApplier(chain, session_factory)
        await applier.apply_created(chain.decoder.decode(created))
        await applier.apply_trade(chain.decoder.decode(later), agent_id=None)

        chain.logs = [created, earlier, later]
        result = await reconciler.tick()

        assert result.applied == 1
        assert result.duplicates == 2
        token = await _token(session_factory)
        assert token is not None
        assert token.reserve_base == "60"
        assert token.reserves_block == 640

    @pytest.mark.asyncio
    async def test_inconsistent_reserves_are_logged(
        self, reconciler: Reconciler, chain: FakeChain, logs: LogBuilder, session_factory, caplog
    ) -> None:
        await _seed_token(session_factory)
        chain.logs = [
            _buy(
                logs,
                block=601,
                eth_in=10,
                tokens_out=100,
                new_reserve_quote=TOTAL_SUPPLY_UNITS - 99,
            ),
        ]

        with caplog.at_level(logging.WARNING):
            result = await reconciler.tick()

        assert result.applied == 1
        assert "Reserve transition mismatch" in caplog.text
        token = await _token(session_factory)
        assert token is not None
        assert token.reserve_base == "10"

    @pytest.mark.asyncio
    async def test_replay_is_a_no_op(
        self,
        reconciler: Reconciler,
        chain: FakeChain,
        logs: LogBuilder,
        session_factory,
        notifier,
        subscriber: RecordingSubscriber,
    ) -> None:
        chain.logs = [logs.created(block=600), _buy(logs, block=601), logs.graduated(block=602)]
        await reconciler.tick()

        replayer = Reconciler(
            chain, session_factory, notifier, refresh_reserves=False, checkpoint_name="replay"
        )
        await notifier.subscribe(subscriber)
        result = await replayer.tick()

        assert result.applied == 0
        assert result.duplicates == 3
        assert len(subscriber.messages) == 1
        async with session_factory() as session:
            assert await TokenRepository(session).count() == 1
            assert len(await TradeRepository(session).list_for_token(TOKEN)) == 1


# ============================================================================
# Broadcasts and concurrency
# ============================================================================


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_single_buy_pushes_one_event_then_stats(
        self,
        reconciler: Reconciler,
        chain: FakeChain,
        logs: LogBuilder,
        session_factory,
        notifier,
        subscriber: RecordingSubscriber,
    ) -> None:
        await _seed_token(session_factory)
        chain.logs = [_buy(logs, block=600, eth_in=ETH + ETH // 2)]
        assert await notifier.subscribe(subscriber) is True

        await reconciler.tick()

        pushed = subscriber.messages[1:]
        assert [m["type"] for m in pushed] == ["event", "stats"]
        event = pushed[0]["data"]
        assert event["type"] == "buy"
        assert event["token"]["address"] == TOKEN
        assert event["token"]["symbol"] == "SEED"
        assert event["amountEth"] == "1.5"
        assert pushed[1]["data"]["totalTrades"] == 1
        assert pushed[1]["data"]["vol24hEth"] == "1.5000"


class _GatedChain(FakeChain):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def current_height(self) -> int:
        await self.gate.wait()
        return self.height


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, session_factory, notifier) -> None:
        chain = _GatedChain()
        reconciler = Reconciler(chain, session_factory, notifier, refresh_reserves=False)

        first = asyncio.create_task(reconciler.tick())
        while not reconciler.is_running:
            await asyncio.sleep(0)

        second = await reconciler.tick()
        chain.gate.set()
        completed = await first

        assert second.skipped is True
        assert second.ok is False
        assert completed.ok
        assert reconciler.is_running is False


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_create_then_buy_across_two_ticks(
        self,
        chain: FakeChain,
        logs: LogBuilder,
        session_factory,
        notifier,
        subscriber: RecordingSubscriber,
    ) -> None:
        reconciler = Reconciler(chain, session_factory, notifier)
        chain.logs = [logs.created(block=600)]
        first = await reconciler.tick()
        assert first.applied == 1

        await notifier.subscribe(subscriber)
        chain.height = 1100
        chain.logs.append(
            logs.purchased(
                eth_in=500,
                tokens_out=100_000,
                fee=5,
                new_reserve_base=505,
                new_reserve_quote=999_900_000,
                block=1050,
            )
        )
        second = await reconciler.tick()

        assert second.ok
        assert second.applied == 1
        async with session_factory() as session:
            trades = await TradeRepository(session).list_for_token(TOKEN)
        assert len(trades) == 1
        trade = trades[0]
        assert trade.direction == "BUY"
        assert (trade.amount_in, trade.amount_out, trade.fee) == ("500", "100000", "5")
        token = await _token(session_factory)
        assert token is not None
        assert token.reserve_base == "505"
        assert token.reserve_quote == "999900000"

        pushed = subscriber.messages[1:]
        assert [m["type"] for m in pushed] == ["event", "stats"]
        assert pushed[0]["data"]["type"] == "buy"
        assert pushed[1]["data"]["totalTrades"] == 1
