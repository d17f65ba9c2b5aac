"""WebSocket room registry used to push complaint events to connected clients."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Track open sockets per room and fan messages out to them.

    Every connection joins ``user_<id>``; admins also join the ``admin`` room.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self._memberships: dict[WebSocket, set[str]] = {}

    def connect(self, websocket: WebSocket, rooms: list[str]) -> None:
        self._memberships[websocket] = set(rooms)
        for room in rooms:
            self._rooms[room].add(websocket)
        logger.info("WebSocket connected", extra={"rooms": sorted(rooms)})

    def disconnect(self, websocket: WebSocket) -> None:
        rooms = self._memberships.pop(websocket, set())
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self._rooms[room]
        if rooms:
            logger.info("WebSocket disconnected", extra={"rooms": sorted(rooms)})

    def connection_count(self, room: str | None = None) -> int:
        if room is None:
            return len(self._memberships)
        return len(self._rooms.get(room, ()))

    async def emit_to_room(self, room: str, event: str, payload: dict[str, Any]) -> None:
        message = {"type": event, "data": payload}
        stale: list[WebSocket] = []
        for websocket in list(self._rooms.get(room, ())):
            try:
                await websocket.send_json(message)
            except Exception:
                logger.debug("Dropping stale websocket", extra={"room": room}, exc_info=True)
                stale.append(websocket)
        for websocket in stale:
            self.disconnect(websocket)
