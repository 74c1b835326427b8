"""WebSocket connection manager.

Tracks all active WebSocket connections per user and whether the app on the
other end is in the foreground. When a Redis client is attached, presence is
mirrored into ``ws:presence:{user_id}`` so processes without sockets (the
worker) can tell whether a user has a live session.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()

FOREGROUND = "foreground"
BACKGROUND = "background"


def presence_key(user_id: int) -> str:
    return f"ws:presence:{user_id}"


@dataclass
class ClientConnection:
    """Represents a single WebSocket client."""

    websocket: WebSocket
    user_id: int
    foreground: bool = True
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class ConnectionManager:
    """Manages all active WebSocket connections.

    Safe for asyncio via the single-threaded event loop.
    """

    def __init__(self, max_connections_per_user: int = 5, presence_ttl_seconds: int = 90) -> None:
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._user_connections: dict[int, set[str]] = defaultdict(set)  # user_id -> {conn_ids}
        self.max_connections_per_user = max_connections_per_user
        self.presence_ttl_seconds = presence_ttl_seconds
        self._redis: Any | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def attach_redis(self, redis: Any | None) -> None:
        """Mirror presence into Redis (None detaches)."""
        self._redis = redis

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: int) -> bool:
        """Accept a new WebSocket connection. Returns False if the user is at the cap."""
        if len(self._user_connections.get(user_id, ())) >= self.max_connections_per_user:
            await websocket.close(code=4008, reason="Too many connections")
            logger.warning("ws_connection_limit", user_id=user_id)
            return False

        await websocket.accept()
        client = ClientConnection(websocket=websocket, user_id=user_id)
        self._connections[conn_id] = client
        self._user_connections[user_id].add(conn_id)
        await self._write_presence(client, conn_id)
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id)
        return True

    async def disconnect(self, conn_id: str) -> None:
        """Remove a WebSocket connection."""
        client = self._connections.pop(conn_id, None)
        if client is None:
            return

        self._user_connections[client.user_id].discard(conn_id)
        if not self._user_connections[client.user_id]:
            del self._user_connections[client.user_id]

        if self._redis is not None:
            try:
                await self._redis.hdel(presence_key(client.user_id), conn_id)
            except Exception:
                logger.warning("ws_presence_clear_failed", conn_id=conn_id, exc_info=True)

        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id)

    async def set_app_state(self, conn_id: str, foreground: bool) -> bool:
        """Record whether the client app is in the foreground."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        client.foreground = foreground
        await self._write_presence(client, conn_id)
        return True

    async def refresh_presence(self, conn_id: str) -> None:
        client = self._connections.get(conn_id)
        if client is not None:
            await self._write_presence(client, conn_id)

    async def _write_presence(self, client: ClientConnection, conn_id: str) -> None:
        if self._redis is None:
            return
        key = presence_key(client.user_id)
        try:
            await self._redis.hset(key, conn_id, FOREGROUND if client.foreground else BACKGROUND)
            await self._redis.expire(key, self.presence_ttl_seconds)
        except Exception:
            logger.warning("ws_presence_write_failed", conn_id=conn_id, exc_info=True)

    def is_connected(self, user_id: int) -> bool:
        return bool(self._user_connections.get(user_id))

    def session_state(self, user_id: int) -> str | None:
        """``foreground`` if any connection is foregrounded, ``background`` if
        connected but none is, None without a live session."""
        conn_ids = self._user_connections.get(user_id)
        if not conn_ids:
            return None
        for conn_id in conn_ids:
            client = self._connections.get(conn_id)
            if client is not None and client.foreground:
                return FOREGROUND
        return BACKGROUND

    async def send_to_user(self, user_id: int, message: dict) -> int:
        """Send a message to every connection of a user.

        Returns the number of connections that received it. Connections that
        fail are dropped.
        """
        conn_ids = list(self._user_connections.get(user_id, set()))
        if not conn_ids:
            return 0

        payload = json.dumps(message, default=str)
        clients = [(conn_id, self._connections[conn_id]) for conn_id in conn_ids if conn_id in self._connections]
        # Sockets are written concurrently so one slow peer does not hold up the rest
        results = await asyncio.gather(
            *(client.websocket.send_text(payload) for _, client in clients), return_exceptions=True
        )

        sent = 0
        for (conn_id, client), result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.warning("ws_send_failed", conn_id=conn_id, user_id=user_id, error=str(result))
                await self.disconnect(conn_id)
                continue
            client.messages_sent += 1
            sent += 1
        return sent

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "foreground_connections": sum(1 for c in self._connections.values() if c.foreground),
        }


# Global singleton
manager = ConnectionManager()
