"""Real-time channel used by the delivery router.

- ``LocalRealtimeChannel`` talks to this process's ConnectionManager
  (the API process, which owns the sockets).
- ``RedisRealtimeChannel`` publishes to ``ws:user:{id}``; the PubSubBridge in
  the API process forwards to the sockets. Presence is read from the hash
  the ConnectionManager mirrors into Redis. Used by the worker.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from pawpals.gamification.errors import ChannelDeliveryFailed
from pawpals.ws.manager import BACKGROUND, FOREGROUND, ConnectionManager, presence_key


class RealtimeChannel(ABC):
    @abstractmethod
    async def session_state(self, user_id: int) -> str | None:
        """``foreground``, ``background`` or None when no live session exists."""
        ...

    @abstractmethod
    async def send(self, user_id: int, message: dict[str, Any]) -> int:
        """Send to the user's live sessions. Returns the number reached."""
        ...


class LocalRealtimeChannel(RealtimeChannel):
    def __init__(self, connections: ConnectionManager) -> None:
        self.connections = connections

    async def session_state(self, user_id: int) -> str | None:
        return self.connections.session_state(user_id)

    async def send(self, user_id: int, message: dict[str, Any]) -> int:
        return await self.connections.send_to_user(user_id, message)


class RedisRealtimeChannel(RealtimeChannel):
    def __init__(self, redis: Any) -> None:
        self.redis = redis

    async def session_state(self, user_id: int) -> str | None:
        states = await self.redis.hvals(presence_key(user_id))
        if not states:
            return None
        return FOREGROUND if FOREGROUND in states else BACKGROUND

    async def send(self, user_id: int, message: dict[str, Any]) -> int:
        try:
            receivers = await self.redis.publish(f"ws:user:{user_id}", json.dumps(message, default=str))
        except Exception as exc:
            raise ChannelDeliveryFailed("socket", str(exc)) from exc
        return int(receivers)
