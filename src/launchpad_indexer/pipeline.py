"""Service orchestrator for the launchpad indexer.

This module provides the Pipeline class that wires the chain client, mirror
store, reconciler and push channel together and owns their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from launchpad_indexer.chain.client import ChainClient, ChainUnavailable
from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.indexer.receipts import ReceiptRecorder
from launchpad_indexer.indexer.reconciler import Reconciler, TickResult
from launchpad_indexer.notifier.hub import Notifier
from launchpad_indexer.notifier.server import PushServer
from launchpad_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base exception for pipeline lifecycle errors."""


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    ticks: int = 0
    ticks_skipped: int = 0
    events_applied: int = 0
    errors: int = 0
    last_tick_time: datetime | None = None
    last_confirmed_block: int | None = None
    last_error: str | None = None


class Pipeline:
    """Runs the reconciler on a fixed timer next to the push server.

    Pipeline flow:
        timer -> Reconciler.tick -> mirror store -> Notifier -> push clients

    If the chain endpoint or factory address is missing the reconciler is
    disabled (logged) and only the store and push server run.

    Example:
        ```python
        from launchpad_indexer.config import get_settings
        from launchpad_indexer.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        serve_push: bool = True,
        schedule_ticks: bool = True,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            serve_push: Start the WebSocket push server.
            schedule_ticks: Run the reconciler on the poll timer. When False,
                ticks only happen through tick_once().
        """
        self._settings = settings or get_settings()
        self._serve_push = serve_push
        self._schedule_ticks = schedule_ticks

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._chain: ChainClient | None = None
        self._notifier: Notifier | None = None
        self._push_server: PushServer | None = None
        self._reconciler: Reconciler | None = None
        self._recorder: ReceiptRecorder | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._tick_tasks: set[asyncio.Task[TickResult]] = set()

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def notifier(self) -> Notifier | None:
        return self._notifier

    @property
    def reconciler(self) -> Reconciler | None:
        return self._reconciler

    @property
    def recorder(self) -> ReceiptRecorder | None:
        """Write path for platform-submitted deploys and trades (None when indexing is disabled)."""
        return self._recorder

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            PipelineError: If the pipeline is not stopped or a component fails to start.
        """
        if self._state != PipelineState.STOPPED:
            raise PipelineError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise PipelineError(f"Pipeline failed to start: {e}") from e

    async def stop(self) -> None:
        """Stop the pipeline gracefully."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)
        session_factory = self._db_manager.session_factory

        self._notifier = Notifier(
            session_factory,
            send_timeout=settings.push.send_timeout_seconds,
        )

        if self._serve_push:
            self._push_server = PushServer(
                self._notifier,
                host=settings.push.host,
                port=settings.push.port,
                path=settings.push.path,
                heartbeat_seconds=settings.push.heartbeat_seconds,
            )

        if not settings.indexer_enabled:
            logger.error("RPC_URL or FACTORY_CONTRACT not set; indexer disabled")
            return

        assert settings.chain.rpc_url is not None
        assert settings.chain.factory_contract is not None

        logger.debug("Initializing chain client...")
        self._chain = ChainClient(
            settings.chain.rpc_url,
            factory_address=settings.chain.factory_contract,
            fallback_rpc_url=settings.chain.fallback_rpc_url,
            redis=self._redis,
            request_timeout=settings.chain.rpc_timeout_seconds,
        )
        try:
            await self._chain.verify_chain_id(settings.chain.chain_id)
        except ChainUnavailable as e:
            logger.warning("Could not verify chain ID at startup: %s", e)
        self._reconciler = Reconciler(
            self._chain,
            session_factory,
            self._notifier,
            lookback_blocks=settings.indexer.lookback_blocks,
            window_blocks=settings.indexer.window_blocks,
            event_order=settings.indexer.event_order,
            refresh_reserves=settings.indexer.refresh_reserves,
        )
        self._recorder = ReceiptRecorder(self._chain, session_factory, notifier=self._notifier)

    async def _start_background_services(self) -> None:
        if self._push_server:
            logger.debug("Starting push server...")
            await self._push_server.start()

        if self._reconciler and self._schedule_ticks:
            logger.info(
                "Starting indexer; polling every %dms", self._settings.indexer.poll_ms
            )
            self._timer_task = asyncio.create_task(self._run_timer())

    async def _run_timer(self) -> None:
        """Spawn a tick immediately and then every poll interval.

        Ticks are not awaited by the timer; an overlapping tick is skipped by
        the reconciler itself.
        """
        if not self._stop_event:
            return
        interval = self._settings.indexer.poll_interval_seconds
        while not self._stop_event.is_set():
            self._spawn_tick()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.tick_once())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def tick_once(self) -> TickResult:
        """Run one reconciliation tick and fold its outcome into the stats."""
        if self._reconciler is None:
            raise PipelineError("Indexer is disabled")
        result = await self._reconciler.tick()
        if result.skipped:
            self._stats.ticks_skipped += 1
            return result

        self._stats.ticks += 1
        self._stats.events_applied += result.applied
        self._stats.last_tick_time = datetime.now(UTC)
        if result.error:
            self._stats.errors += 1
            self._stats.last_error = result.error
        state = self._reconciler.state
        if state is not None:
            self._stats.last_confirmed_block = state.last_confirmed_block
        return result

    async def _stop_background_services(self) -> None:
        if self._timer_task:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None

        for task in list(self._tick_tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tick_tasks.clear()

        if self._push_server:
            logger.debug("Stopping push server...")
            await self._push_server.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._chain:
            await self._chain.aclose()
            self._chain = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._reconciler = None
        self._recorder = None
        self._push_server = None
        self._notifier = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until stopped or cancelled."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
