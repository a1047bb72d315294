"""Connection handles and room-keyed membership tracking."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_connections, realtime_events_total


logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through *websocket*, returning False instead of raising on a dead socket."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


class Connection:
    """A single client event channel.

    ``user_id`` is filled in once the client announces itself with
    ``user_online``; ``rooms`` mirrors the membership kept by
    :class:`ConnectionManager`.
    """

    def __init__(self, websocket: WebSocket, *, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.id = connection_id or uuid.uuid4().hex
        self.user_id: str | None = None
        self.rooms: Set[str] = set()

    def __repr__(self) -> str:
        return f"<Connection id={self.id} user={self.user_id!r}>"

    @property
    def is_open(self) -> bool:
        return self.websocket.application_state == WebSocketState.CONNECTED

    async def emit(self, event: str, data: Any) -> bool:
        delivered = await safe_send_json(self.websocket, {"type": event, "data": data})
        if delivered:
            realtime_events_total.labels(event, "out").inc()
        return delivered


class ConnectionManager:
    """Track every live connection and the rooms each one has joined.

    Mutating methods never await, so they run atomically on the event loop.
    """

    def __init__(self) -> None:
        self._connections: Set[Connection] = set()
        self._rooms: Dict[str, Set[Connection]] = defaultdict(set)

    def register(self, connection: Connection) -> None:
        if connection in self._connections:
            return
        self._connections.add(connection)
        realtime_connections.labels("chat").inc()

    def unregister(self, connection: Connection) -> None:
        if connection not in self._connections:
            return
        self._connections.discard(connection)
        for room_id in list(connection.rooms):
            self.leave(room_id, connection)
        realtime_connections.labels("chat").dec()

    def join(self, room_id: str, connection: Connection) -> None:
        self._rooms[room_id].add(connection)
        connection.rooms.add(room_id)

    def leave(self, room_id: str, connection: Connection) -> None:
        connection.rooms.discard(room_id)
        members = self._rooms.get(room_id)
        if not members:
            return
        members.discard(connection)
        if not members:
            self._rooms.pop(room_id, None)

    def members(self, room_id: str) -> list[Connection]:
        return list(self._rooms.get(room_id, ()))

    def connections(self) -> list[Connection]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    async def broadcast(
        self,
        room_id: str,
        event: str,
        data: Any,
        *,
        exclude: Iterable[Connection] | None = None,
    ) -> int:
        """Emit to every member of *room_id*; an empty room is a no-op."""

        exclude_set = set(exclude or ())
        delivered = 0
        for connection in self.members(room_id):
            if connection in exclude_set:
                continue
            if await connection.emit(event, data):
                delivered += 1
        return delivered

    async def broadcast_all(self, event: str, data: Any) -> int:
        delivered = 0
        for connection in self.connections():
            if await connection.emit(event, data):
                delivered += 1
        return delivered
