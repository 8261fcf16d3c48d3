"""WebSocket push channel for live clients.

Clients connect to `ws://host:port/ws`, immediately receive a `stats`
message, then every broadcast `event`/`stats` message. A `{"type": "ping"}`
message is answered with `{"type": "pong"}`. Dead connections are detected by
protocol-level pings every heartbeat interval and dropped.
"""

from __future__ import annotations

import json
import logging
from http import HTTPStatus
from typing import TYPE_CHECKING

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

if TYPE_CHECKING:
    from launchpad_indexer.notifier.hub import Notifier

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_SECONDS = 30.0
PONG = json.dumps({"type": "pong"})


class PushServerError(Exception):
    """Base exception for push server errors."""


class _ConnectionSubscriber:
    """Adapts a server connection to the Notifier's subscriber protocol."""

    def __init__(self, connection: ServerConnection) -> None:
        self.connection = connection

    async def send(self, message: str) -> None:
        await self.connection.send(message)


class PushServer:
    """Serves the push channel and bridges connections into the Notifier."""

    def __init__(
        self,
        notifier: Notifier,
        *,
        host: str = "0.0.0.0",
        port: int = 3001,
        path: str = "/ws",
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
    ) -> None:
        self._notifier = notifier
        self._host = host
        self._port = port
        self._path = path
        self._heartbeat = heartbeat_seconds
        self._server: Server | None = None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound port (useful when started with port 0)."""
        if self._server is None:
            return self._port
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        if self._server is not None:
            return
        try:
            self._server = await serve(
                self._handle,
                self._host,
                self._port,
                process_request=self._check_path,
                ping_interval=self._heartbeat,
                ping_timeout=self._heartbeat,
            )
        except OSError as e:
            raise PushServerError(f"Cannot listen on {self._host}:{self._port}: {e}") from e
        logger.info("Push server listening on ws://%s:%d%s", self._host, self.port, self._path)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Push server stopped")

    def _check_path(self, connection: ServerConnection, request: Request) -> Response | None:
        if request.path.split("?", 1)[0] != self._path:
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def _handle(self, connection: ServerConnection) -> None:
        subscriber = _ConnectionSubscriber(connection)
        if not await self._notifier.subscribe(subscriber):
            await connection.close()
            return
        try:
            async for raw in connection:
                await self._on_message(connection, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._notifier.unsubscribe(subscriber)

    async def _on_message(self, connection: ServerConnection, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("Ignoring non-JSON client message")
            return
        if isinstance(message, dict) and message.get("type") == "ping":
            await connection.send(PONG)
