"""Chain-to-mirror reconciliation.

Each tick scans one bounded block window of factory logs, decodes them into
typed events, orders them, and applies each event to the mirror in its own
transaction. Every event that changed the mirror is then broadcast exactly
once, followed by a fresh stats snapshot. The cursor only advances after a
whole window has been applied, so a failed tick re-scans the same range and
the idempotent writes turn the replay into a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from launchpad_indexer.chain.decoder import EventDecoder
from launchpad_indexer.chain.events import (
    EventKind,
    FactoryEvent,
    TokenCreated,
    TokenGraduated,
    TokensPurchased,
    TokensSold,
    causal_order,
    chronological_order,
)
from launchpad_indexer.indexer.applier import EventApplier
from launchpad_indexer.storage.repos import CheckpointRepository, TokenRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from launchpad_indexer.chain.client import ChainClient
    from launchpad_indexer.indexer.attribution import AgentResolver
    from launchpad_indexer.notifier.hub import Notifier

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_BLOCKS = 500
DEFAULT_WINDOW_BLOCKS = 1000
DEFAULT_CHECKPOINT_NAME = "factory"

EventOrder = Literal["causal", "chronological"]


@dataclass
class ReconcilerState:
    """Cursor and watch set for one reconciler instance."""

    last_confirmed_block: int
    watched_tokens: set[str] = field(default_factory=set)


@dataclass
class TickResult:
    """Outcome of one reconciliation tick."""

    skipped: bool = False
    from_block: int | None = None
    to_block: int | None = None
    fetched: int = 0
    applied: int = 0
    duplicates: int = 0
    ignored: int = 0
    refreshed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


class Reconciler:
    """Polls the factory and keeps the mirror in step with the chain.

    Example:
        ```python
        reconciler = Reconciler(chain, session_factory, notifier)
        await reconciler.bootstrap()
        result = await reconciler.tick()
        ```
    """

    def __init__(
        self,
        chain: ChainClient,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        *,
        decoder: EventDecoder | None = None,
        resolver: AgentResolver | None = None,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
        window_blocks: int = DEFAULT_WINDOW_BLOCKS,
        event_order: EventOrder = "causal",
        refresh_reserves: bool = True,
        checkpoint_name: str = DEFAULT_CHECKPOINT_NAME,
    ) -> None:
        if window_blocks < 1:
            raise ValueError("window_blocks must be >= 1")
        if lookback_blocks < 0:
            raise ValueError("lookback_blocks must be >= 0")
        if event_order not in ("causal", "chronological"):
            raise ValueError(f"Unknown event order: {event_order!r}")

        self._chain = chain
        self._session_factory = session_factory
        self._notifier = notifier
        self._decoder = decoder or EventDecoder()
        self._applier = EventApplier(chain, session_factory, resolver=resolver)
        self._lookback = lookback_blocks
        self._window = window_blocks
        self._order = chronological_order if event_order == "chronological" else causal_order
        self._refresh_reserves = refresh_reserves
        self._checkpoint_name = checkpoint_name

        self._state: ReconcilerState | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ReconcilerState | None:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def bootstrap(self) -> ReconcilerState:
        """Load the persisted cursor and known tokens, or start `lookback` blocks back."""
        async with self._session_factory() as session:
            cursor = await CheckpointRepository(session).get(self._checkpoint_name)
            addresses = await TokenRepository(session).list_addresses()

        if cursor is None:
            height = await self._chain.current_height()
            cursor = max(0, height - self._lookback)
            logger.info("No checkpoint; starting at block %d (height=%d)", cursor, height)
        else:
            logger.info("Resuming from checkpoint block %d", cursor)

        self._state = ReconcilerState(
            last_confirmed_block=cursor,
            watched_tokens={a.lower() for a in addresses},
        )
        logger.info("Loaded %d known tokens to watch", len(self._state.watched_tokens))
        return self._state

    async def tick(self) -> TickResult:
        """Scan and apply one window. Never raises; a tick already in flight is skipped."""
        if self._lock.locked():
            logger.debug("Tick already running; skipping")
            return TickResult(skipped=True)

        async with self._lock:
            result = TickResult()
            try:
                await self._run_window(result)
            except Exception as e:
                result.error = str(e) or type(e).__name__
                logger.error(
                    "Tick failed for blocks [%s, %s]; cursor unchanged: %s",
                    result.from_block,
                    result.to_block,
                    e,
                )
            return result

    async def _run_window(self, result: TickResult) -> None:
        if self._state is None:
            await self.bootstrap()
        state = self._state
        assert state is not None

        height = await self._chain.current_height()
        if height <= state.last_confirmed_block:
            return

        from_block = state.last_confirmed_block + 1
        to_block = min(height, state.last_confirmed_block + self._window)
        result.from_block, result.to_block = from_block, to_block

        events = await self._fetch_events(from_block, to_block)
        result.fetched = len(events)

        await self._applier.check_reserve_sequence(
            [e for e in events if isinstance(e, (TokensPurchased, TokensSold))]
        )

        traded: list[str] = []
        for event in self._order(events):
            applied = await self._apply(state, event, result)
            if applied is None:
                continue
            result.applied += 1
            if isinstance(event, (TokensPurchased, TokensSold)) and event.token not in traded:
                traded.append(event.token)
            await self._notifier.broadcast("event", applied)
            await self._notifier.broadcast_stats()

        if self._refresh_reserves:
            for token in traded:
                if await self._applier.refresh_reserves(token, as_of_block=height):
                    result.refreshed += 1

        async with self._session_factory() as session:
            await CheckpointRepository(session).set(self._checkpoint_name, to_block)
            await session.commit()
        state.last_confirmed_block = to_block

        if result.fetched:
            logger.info(
                "Blocks [%d, %d]: fetched=%d applied=%d duplicates=%d ignored=%d",
                from_block,
                to_block,
                result.fetched,
                result.applied,
                result.duplicates,
                result.ignored,
            )

    async def _fetch_events(self, from_block: int, to_block: int) -> list[FactoryEvent]:
        events: list[FactoryEvent] = []
        for kind in EventKind:
            logs = await self._chain.get_logs(self._decoder.topic_for(kind), from_block, to_block)
            for raw in logs:
                event = self._decoder.decode(raw, expected=kind)
                if event is not None:
                    events.append(event)
        return events

    async def _apply(
        self, state: ReconcilerState, event: FactoryEvent, result: TickResult
    ) -> dict[str, Any] | None:
        if isinstance(event, TokenCreated):
            applied = await self._applier.apply_created(event)
            state.watched_tokens.add(event.token)
        elif isinstance(event, (TokensPurchased, TokensSold)):
            if not await self._is_known(state, event.token):
                result.ignored += 1
                return None
            applied = await self._applier.apply_trade(event)
        elif isinstance(event, TokenGraduated):
            if not await self._is_known(state, event.token):
                result.ignored += 1
                return None
            applied = await self._applier.apply_graduated(event)
        else:  # pragma: no cover
            return None

        if applied is None:
            result.duplicates += 1
        return applied

    async def _is_known(self, state: ReconcilerState, token: str) -> bool:
        if token in state.watched_tokens:
            return True
        # The write path may have recorded the token since bootstrap.
        async with self._session_factory() as session:
            known = await TokenRepository(session).exists(token)
        if known:
            state.watched_tokens.add(token)
        else:
            logger.debug("Skipping event for unknown token %s", token)
        return known

