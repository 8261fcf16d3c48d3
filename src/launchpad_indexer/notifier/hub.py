"""Fan-out of mirror deltas and aggregate stats to live subscribers.

Delivery is best-effort: a subscriber whose send fails or times out is
dropped, and neither the other subscribers nor the caller ever see the error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from launchpad_indexer.storage.repos import AggregateStats, StatsRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT_SECONDS = 5.0

EVENT = "event"
STATS = "stats"


class Subscriber(Protocol):
    """Anything that can receive a serialized push message."""

    async def send(self, message: str) -> None: ...


def encode_message(kind: str, data: Any) -> str:
    return json.dumps({"type": kind, "data": data}, separators=(",", ":"))


class SubscriberRegistry:
    """Lock-protected set of connected subscribers."""

    def __init__(self) -> None:
        self._members: list[Subscriber] = []
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, subscriber: object) -> bool:
        return subscriber in self._members

    async def add(self, subscriber: Subscriber) -> None:
        async with self.lock:
            self._add_locked(subscriber)

    def _add_locked(self, subscriber: Subscriber) -> None:
        if subscriber not in self._members:
            self._members.append(subscriber)

    async def remove(self, subscriber: Subscriber) -> bool:
        async with self.lock:
            try:
                self._members.remove(subscriber)
            except ValueError:
                return False
            return True

    async def members(self) -> list[Subscriber]:
        """Copy of the current membership, safe to iterate while others change it."""
        async with self.lock:
            return list(self._members)


class Notifier:
    """Broadcasts `{"type": kind, "data": payload}` messages to every subscriber.

    Example:
        ```python
        notifier = Notifier(session_factory)
        await notifier.subscribe(connection)
        await notifier.broadcast("event", {"type": "buy", ...})
        await notifier.broadcast_stats()
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        send_timeout: float = DEFAULT_SEND_TIMEOUT_SECONDS,
        registry: SubscriberRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._send_timeout = send_timeout
        self.registry = registry or SubscriberRegistry()

    @property
    def subscriber_count(self) -> int:
        return len(self.registry)

    async def snapshot(self, now: datetime | None = None) -> AggregateStats:
        """Aggregate stats computed from the store on every call."""
        async with self._session_factory() as session:
            return await StatsRepository(session).snapshot(now or datetime.now(UTC))

    async def subscribe(self, subscriber: Subscriber) -> bool:
        """Send the current snapshot, then start delivering broadcasts.

        Returns False (and does not register) if the snapshot cannot be delivered.
        """
        stats = await self.snapshot()
        message = encode_message(STATS, stats.to_dict())
        async with self.registry.lock:
            if not await self._send(subscriber, message):
                return False
            self.registry._add_locked(subscriber)
        logger.info("Subscriber connected (total=%d)", len(self.registry))
        return True

    async def unsubscribe(self, subscriber: Subscriber) -> None:
        if await self.registry.remove(subscriber):
            logger.info("Subscriber disconnected (total=%d)", len(self.registry))

    async def broadcast(self, kind: str, payload: Any) -> int:
        """Send one message to every subscriber. Returns the number of successful sends."""
        message = encode_message(kind, payload)
        targets = await self.registry.members()
        if not targets:
            return 0

        results = await asyncio.gather(*(self._send(sub, message) for sub in targets))
        delivered = 0
        for subscriber, ok in zip(targets, results, strict=True):
            if ok:
                delivered += 1
            else:
                await self.registry.remove(subscriber)
                logger.info("Dropped unresponsive subscriber (total=%d)", len(self.registry))
        return delivered

    async def broadcast_stats(self) -> int:
        try:
            stats = await self.snapshot()
        except Exception as e:
            logger.error("Failed to compute stats snapshot: %s", e)
            return 0
        return await self.broadcast(STATS, stats.to_dict())

    async def _send(self, subscriber: Subscriber, message: str) -> bool:
        try:
            await asyncio.wait_for(subscriber.send(message), timeout=self._send_timeout)
        except Exception as e:
            logger.debug("Send to subscriber failed: %r", e)
            return False
        return True
