"""WebSocket gateway letting external clients talk to the agent with JSON messages.

Inbound:  {"type": "message", "content": "hello", "chat_id": "ws_client1"}
Outbound: {"type": "response", "content": "Hi!", "chat_id": "ws_client1"}
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Hashable

import websockets
from websockets.exceptions import ConnectionClosed

from mimiclaw.bus import BusFullError, Channel, Message, MessageBus

_log = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 18789
DEFAULT_MAX_CLIENTS = 4
UNKNOWN_CHAT_ID = "ws_unknown"

_CHAT_ID_LEN = 31


class ClientNotFoundError(KeyError):
    """No connected client has the given chat id."""


@dataclass
class _Client:
    connection: Any
    chat_id: str


class WebSocketGateway:
    """Tracks connected clients, feeds their messages to the bus and sends replies."""

    def __init__(
        self,
        bus: MessageBus,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        max_clients: int = DEFAULT_MAX_CLIENTS,
    ) -> None:
        self._bus = bus
        self.host = host
        self.port = port
        self.max_clients = max_clients
        self._clients: dict[Hashable, _Client] = {}
        self._server: Any = None
        self._ids = itertools.count(1)

    @property
    def running(self) -> bool:
        return self._server is not None

    def chat_id_of(self, client_id: Hashable) -> str | None:
        """Return the chat id of a registered client, or None."""
        client = self._clients.get(client_id)
        return client.chat_id if client is not None else None

    def register(self, client_id: Hashable, connection: Any) -> str | None:
        """Track a new client; return its chat id, or None if the table is full."""
        if len(self._clients) >= self.max_clients:
            _log.warning("Max clients reached, rejecting %s", client_id)
            return None
        chat_id = f"ws_{client_id}"[:_CHAT_ID_LEN]
        self._clients[client_id] = _Client(connection, chat_id)
        _log.info("Client connected: %s", chat_id)
        return chat_id

    def unregister(self, client_id: Hashable) -> None:
        """Forget a client; unknown ids are ignored."""
        client = self._clients.pop(client_id, None)
        if client is not None:
            _log.info("Client disconnected: %s", client.chat_id)

    def handle_text(self, client_id: Hashable, payload: str) -> Message | None:
        """Handle one text frame; return the message queued for the agent, if any."""
        try:
            root = json.loads(payload)
        except ValueError:
            _log.warning("Invalid JSON from %s", client_id)
            return None
        if not isinstance(root, dict):
            return None
        content = root.get("content")
        if root.get("type") != "message" or not isinstance(content, str):
            return None

        client = self._clients.get(client_id)
        chat_id = client.chat_id if client is not None else UNKNOWN_CHAT_ID
        requested = root.get("chat_id")
        if isinstance(requested, str):
            chat_id = requested
            if client is not None:
                client.chat_id = requested[:_CHAT_ID_LEN]

        _log.info("WS message from %s: %.40s...", chat_id, content)
        msg = Message(Channel.WEBSOCKET, chat_id[:_CHAT_ID_LEN], content)
        try:
            self._bus.push_inbound(msg)
        except BusFullError as exc:
            _log.warning("Dropping WS message from %s: %s", chat_id, exc)
            return None
        return msg

    def _find(self, chat_id: str) -> tuple[Hashable, _Client] | None:
        for client_id, client in self._clients.items():
            if client.chat_id == chat_id:
                return client_id, client
        return None

    async def send(self, chat_id: str, text: str) -> None:
        """Send a response frame to the client with this chat id."""
        if self._server is None:
            raise RuntimeError("WebSocket server is not running")
        found = self._find(chat_id)
        if found is None:
            _log.warning("No WS client with chat_id=%s", chat_id)
            raise ClientNotFoundError(chat_id)
        client_id, client = found
        frame = json.dumps(
            {"type": "response", "content": text, "chat_id": chat_id},
            separators=(",", ":"),
            ensure_ascii=False,
        )
        try:
            await client.connection.send(frame)
        except Exception as exc:
            _log.warning("Failed to send to %s: %s", chat_id, exc)
            self.unregister(client_id)
            raise ConnectionError(f"failed to send to {chat_id}") from exc

    async def _serve_connection(self, connection: Any) -> None:
        client_id = next(self._ids)
        self.register(client_id, connection)
        try:
            async for payload in connection:
                if isinstance(payload, bytes):
                    payload = payload.decode("utf-8", errors="replace")
                if payload:
                    await asyncio.to_thread(self.handle_text, client_id, payload)
        except ConnectionClosed:
            pass
        finally:
            self.unregister(client_id)

    async def start(self) -> None:
        """Start listening; binding to 0 lets the system choose, and the choice is recorded."""
        if self._server is not None:
            return
        self._clients.clear()
        self._server = await websockets.serve(self._serve_connection, self.host, self.port)
        sockets = list(self._server.sockets or ())
        if sockets:
            self.port = sockets[0].getsockname()[1]
        _log.info("WebSocket server started on port %d", self.port)

    async def stop(self) -> None:
        """Stop the server and drop all clients."""
        server = self._server
        if server is None:
            return
        self._server = None
        server.close()
        await server.wait_closed()
        self._clients.clear()
        _log.info("WebSocket server stopped")