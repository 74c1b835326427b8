"""Tests for the Redis pub/sub to WebSocket bridge."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from pawpals.ws.bridge import USER_CHANNEL_PATTERN, PubSubBridge


def _bridge() -> tuple[PubSubBridge, MagicMock]:
    connections = MagicMock()
    connections.send_to_user = AsyncMock(return_value=1)
    return PubSubBridge(AsyncMock(), connections=connections), connections


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_forwards_to_user(self) -> None:
        bridge, connections = _bridge()
        payload = {"type": "level_up", "data": {"level": 2}}
        sent = await bridge.handle_message(
            {"type": "pmessage", "channel": "ws:user:42", "data": json.dumps(payload)}
        )
        assert sent == 1
        connections.send_to_user.assert_awaited_once_with(42, payload)

    @pytest.mark.asyncio
    async def test_bytes_channel_and_data(self) -> None:
        bridge, connections = _bridge()
        await bridge.handle_message(
            {"type": "pmessage", "channel": b"ws:user:7", "data": b'{"type": "heartbeat"}'}
        )
        connections.send_to_user.assert_awaited_once_with(7, {"type": "heartbeat"})

    @pytest.mark.asyncio
    async def test_ignores_non_pattern_messages(self) -> None:
        bridge, connections = _bridge()
        assert await bridge.handle_message({"type": "psubscribe", "channel": "ws:user:*", "data": 1}) == 0
        connections.send_to_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_user_id(self) -> None:
        bridge, connections = _bridge()
        assert await bridge.handle_message({"type": "pmessage", "channel": "ws:user:abc", "data": "{}"}) == 0
        connections.send_to_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        bridge, connections = _bridge()
        assert await bridge.handle_message({"type": "pmessage", "channel": "ws:user:1", "data": "not json"}) == 0
        connections.send_to_user.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_untyped_payload_dropped(self) -> None:
        bridge, connections = _bridge()
        data = json.dumps({"level": 3})
        assert await bridge.handle_message({"type": "pmessage", "channel": "ws:user:1", "data": data}) == 0
        connections.send_to_user.assert_not_awaited()


class TestBridgeLifecycle:
    @pytest.mark.asyncio
    async def test_start_subscribes_and_forwards(self) -> None:
        messages = [
            {"type": "pmessage", "channel": "ws:user:5", "data": json.dumps({"type": "notification"})},
            None,
        ]

        async def fake_get_message(**kwargs):
            await asyncio.sleep(0.01)
            return messages.pop(0) if messages else None

        pubsub = AsyncMock()
        pubsub.get_message = fake_get_message
        redis = MagicMock()
        redis.pubsub = MagicMock(return_value=pubsub)
        connections = MagicMock()
        connections.send_to_user = AsyncMock(return_value=1)

        bridge = PubSubBridge(redis, connections=connections)
        task = asyncio.create_task(bridge.start())
        await asyncio.sleep(0.05)
        await bridge.stop()
        await asyncio.wait_for(task, timeout=2)

        pubsub.psubscribe.assert_awaited_once_with(USER_CHANNEL_PATTERN)
        connections.send_to_user.assert_awaited_once_with(5, {"type": "notification"})
        pubsub.punsubscribe.assert_awaited_once()
        pubsub.close.assert_awaited_once()
