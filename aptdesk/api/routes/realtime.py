"""WebSocket endpoint streaming complaint events to connected users."""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from aptdesk.complaints.errors import AuthenticationError
from aptdesk.complaints.notifications import ADMIN_ROOM, user_room
from aptdesk.complaints.policy import Role
from aptdesk.dependencies.auth import resolve_user_from_token

router = APIRouter(tags=["realtime"])

logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def complaint_events(websocket: WebSocket) -> None:
    manager = getattr(websocket.app.state, "connection_manager", None)
    settings = getattr(websocket.app.state, "settings", None)
    token = websocket.query_params.get("token")

    await websocket.accept()
    if manager is None or settings is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Real-time updates unavailable")
        return

    try:
        user = resolve_user_from_token(token, settings.api_tokens)
    except AuthenticationError:
        user = None
    if user is None:
        logger.info("Rejected websocket connection without valid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid authentication token")
        return

    rooms = [user_room(user.id)]
    if user.role is Role.ADMIN:
        rooms.append(ADMIN_ROOM)
    manager.connect(websocket, rooms)
    try:
        await websocket.send_json({"type": "connected", "data": {"user_id": user.id, "rooms": rooms}})
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected", extra={"user_id": user.id})
    finally:
        manager.disconnect(websocket)
