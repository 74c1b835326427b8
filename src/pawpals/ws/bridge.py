"""Bridges Redis pub/sub to WebSocket clients.

Processes without sockets (the stream worker) publish complete client
messages to ``ws:user:{id}``; this bridge, running in the API process,
forwards them to the user's live connections.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from pawpals.ws.manager import ConnectionManager, manager

logger = structlog.get_logger()

USER_CHANNEL_PATTERN = "ws:user:*"


class PubSubBridge:
    """Subscribes to per-user Redis channels and pushes messages to WebSocket clients."""

    def __init__(self, redis_client: aioredis.Redis, connections: ConnectionManager = manager) -> None:
        self.redis = redis_client
        self.connections = connections
        self._running = False

    async def handle_message(self, message: dict) -> int:
        """Forward one pub/sub message. Returns the number of sockets reached."""
        if message.get("type") != "pmessage":
            return 0

        channel = message.get("channel", "")
        if isinstance(channel, bytes):
            channel = channel.decode()
        try:
            user_id = int(channel.rsplit(":", 1)[-1])
        except ValueError:
            logger.warning("pubsub_invalid_user_id", channel=channel)
            return 0

        try:
            data = message.get("data", b"")
            if isinstance(data, bytes):
                data = data.decode()
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("pubsub_invalid_message", channel=channel)
            return 0
        if not isinstance(payload, dict) or "type" not in payload:
            logger.warning("pubsub_untyped_message", channel=channel)
            return 0

        sent = await self.connections.send_to_user(user_id, payload)
        if sent > 0:
            logger.debug("user_message_forwarded", user_id=user_id, type=payload["type"], recipients=sent)
        return sent

    async def start(self) -> None:
        """Listen until stopped."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(USER_CHANNEL_PATTERN)
        logger.info("pubsub_bridge_started", patterns=[USER_CHANNEL_PATTERN])

        try:
            while self._running:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                await self.handle_message(message)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.punsubscribe()
            await pubsub.close()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
