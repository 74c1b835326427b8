"""WebSocket endpoint: the real-time notification channel."""

import asyncio
import json
import uuid

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from pawpals.auth.jwt import verify_token
from pawpals.config import get_settings
from pawpals.ws.manager import BACKGROUND, FOREGROUND, manager

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
) -> None:
    """Single per-user WebSocket with JWT authentication.

    Protocol:
        Client -> Server:
            {"action": "ping"}
            {"action": "app_state", "state": "foreground" | "background"}

        Server -> Client:
            {"type": "connected", "user_id": 1}
            {"type": "notification", "notification": {...}}
            {"type": "points_updated" | "level_up" | "streak_updated"
                     | "achievement_unlocked" | "mission_completed", "data": {...}}
            {"type": "pong"}
            {"type": "heartbeat"}
            {"type": "error", "message": "..."}
    """
    try:
        payload = verify_token(token, expected_type="access")
        user_id = int(payload["sub"])
    except Exception as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    conn_id = str(uuid.uuid4())
    if not await manager.connect(websocket, conn_id, user_id):
        return

    heartbeat = get_settings().ws_heartbeat_interval_seconds
    try:
        await websocket.send_json({"type": "connected", "user_id": user_id})
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=heartbeat)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})
                await manager.refresh_presence(conn_id)
                continue

            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            action = msg.get("action") if isinstance(msg, dict) else None

            if action == "ping":
                await manager.refresh_presence(conn_id)
                await websocket.send_json({"type": "pong"})

            elif action == "app_state":
                state = msg.get("state")
                if state not in (FOREGROUND, BACKGROUND):
                    await websocket.send_json({"type": "error", "message": f"Invalid app state: {state}"})
                    continue
                await manager.set_app_state(conn_id, foreground=state == FOREGROUND)
                await websocket.send_json({"type": "app_state", "state": state})

            else:
                await websocket.send_json({
                    "type": "error",
                    "message": f"Unknown action: {action}",
                })

    except WebSocketDisconnect:
        await manager.disconnect(conn_id)
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
        await manager.disconnect(conn_id)
