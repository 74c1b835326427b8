"""Unit tests for the WebSocket ConnectionManager."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from pawpals.ws.manager import BACKGROUND, FOREGROUND, ConnectionManager, presence_key


@pytest.fixture
def mgr() -> ConnectionManager:
    """Fresh ConnectionManager for each test."""
    return ConnectionManager(max_connections_per_user=2)


def _make_ws(*, fail_send: bool = False) -> MagicMock:
    """Create a mock WebSocket."""
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.close = AsyncMock()
    if fail_send:
        ws.send_text = AsyncMock(side_effect=RuntimeError("connection closed"))
    else:
        ws.send_text = AsyncMock()
    return ws


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_registers_client(self, mgr: ConnectionManager) -> None:
        ws = _make_ws()
        assert await mgr.connect(ws, "conn-1", user_id=42) is True
        ws.accept.assert_awaited_once()
        assert mgr.connection_count == 1
        assert mgr.is_connected(42)
        stats = mgr.get_stats()
        assert stats["total_connections"] == 1
        assert stats["unique_users"] == 1

    @pytest.mark.asyncio
    async def test_connection_cap_per_user(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        await mgr.connect(_make_ws(), "conn-2", user_id=42)
        third = _make_ws()
        assert await mgr.connect(third, "conn-3", user_id=42) is False
        third.accept.assert_not_awaited()
        third.close.assert_awaited_once()
        assert mgr.connection_count == 2

    @pytest.mark.asyncio
    async def test_cap_is_per_user(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1)
        await mgr.connect(_make_ws(), "conn-2", user_id=1)
        assert await mgr.connect(_make_ws(), "conn-3", user_id=2) is True


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_cleans_up(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        await mgr.disconnect("conn-1")
        assert mgr.connection_count == 0
        assert not mgr.is_connected(42)
        assert mgr.session_state(42) is None

    @pytest.mark.asyncio
    async def test_disconnect_nonexistent(self, mgr: ConnectionManager) -> None:
        """Disconnecting a nonexistent conn_id is a no-op."""
        await mgr.disconnect("nonexistent")
        assert mgr.connection_count == 0


class TestSessionState:
    @pytest.mark.asyncio
    async def test_foreground_by_default(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        assert mgr.session_state(42) == FOREGROUND

    @pytest.mark.asyncio
    async def test_background_when_all_backgrounded(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        await mgr.connect(_make_ws(), "conn-2", user_id=42)
        await mgr.set_app_state("conn-1", foreground=False)
        assert mgr.session_state(42) == FOREGROUND
        await mgr.set_app_state("conn-2", foreground=False)
        assert mgr.session_state(42) == BACKGROUND

    @pytest.mark.asyncio
    async def test_set_state_unknown_connection(self, mgr: ConnectionManager) -> None:
        assert await mgr.set_app_state("nope", foreground=True) is False


class TestSendToUser:
    @pytest.mark.asyncio
    async def test_sends_to_all_user_connections(self, mgr: ConnectionManager) -> None:
        ws1, ws2, other = _make_ws(), _make_ws(), _make_ws()
        await mgr.connect(ws1, "conn-1", user_id=42)
        await mgr.connect(ws2, "conn-2", user_id=42)
        await mgr.connect(other, "conn-3", user_id=7)

        sent = await mgr.send_to_user(42, {"type": "points_updated", "data": {"total_points": 20}})
        assert sent == 2
        payload = json.loads(ws1.send_text.call_args[0][0])
        assert payload == {"type": "points_updated", "data": {"total_points": 20}}
        other.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_connections_returns_zero(self, mgr: ConnectionManager) -> None:
        assert await mgr.send_to_user(99, {"type": "heartbeat"}) == 0

    @pytest.mark.asyncio
    async def test_failed_connection_is_dropped(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(fail_send=True), "conn-bad", user_id=42)
        await mgr.connect(_make_ws(), "conn-good", user_id=42)
        assert await mgr.send_to_user(42, {"type": "heartbeat"}) == 1
        assert mgr.connection_count == 1

    @pytest.mark.asyncio
    async def test_stalled_connection_does_not_hold_up_others(self, mgr: ConnectionManager) -> None:
        async def stall(_payload: str) -> None:
            await asyncio.sleep(10)

        slow, fast = _make_ws(), _make_ws()
        slow.send_text = AsyncMock(side_effect=stall)
        await mgr.connect(slow, "conn-slow", user_id=42)
        await mgr.connect(fast, "conn-fast", user_id=42)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(mgr.send_to_user(42, {"type": "heartbeat"}), timeout=0.1)
        fast.send_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_every_failed_connection_is_dropped(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(fail_send=True), "conn-a", user_id=42)
        await mgr.connect(_make_ws(fail_send=True), "conn-b", user_id=42)
        assert await mgr.send_to_user(42, {"type": "heartbeat"}) == 0
        assert not mgr.is_connected(42)


class TestPresenceMirror:
    @pytest.mark.asyncio
    async def test_presence_written_and_cleared(self, mgr: ConnectionManager) -> None:
        redis = AsyncMock()
        mgr.attach_redis(redis)
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        redis.hset.assert_awaited_with(presence_key(42), "conn-1", FOREGROUND)
        redis.expire.assert_awaited_with(presence_key(42), mgr.presence_ttl_seconds)

        await mgr.set_app_state("conn-1", foreground=False)
        redis.hset.assert_awaited_with(presence_key(42), "conn-1", BACKGROUND)

        await mgr.disconnect("conn-1")
        redis.hdel.assert_awaited_once_with(presence_key(42), "conn-1")

    @pytest.mark.asyncio
    async def test_presence_failure_does_not_break_connect(self, mgr: ConnectionManager) -> None:
        redis = AsyncMock()
        redis.hset = AsyncMock(side_effect=ConnectionError("redis down"))
        mgr.attach_redis(redis)
        assert await mgr.connect(_make_ws(), "conn-1", user_id=42) is True
        assert mgr.is_connected(42)
