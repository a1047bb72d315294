"""Event hub wiring connection events to the realtime components."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from fastapi.websockets import WebSocket
from pydantic import TypeAdapter

from app.monitoring.metrics import realtime_events_total

from ..storage import MessageStore
from .cluster import DEFAULT_PRESENCE_INTERVAL, ClusterRelay
from .connections import Connection, ConnectionManager
from .events import (
    DEBUG_ROOM_INFO,
    DEBUG_ROOM_RESPONSE,
    ERROR,
    JOIN_ROOM,
    LEAVE_ROOM,
    MARK_AS_READ,
    MESSAGE_READ,
    ONLINE_USERS,
    PING,
    PONG,
    SEND_MESSAGE,
    TYPING,
    USER_ONLINE,
    EventValidationError,
    ReadReceiptEvent,
    RoomPairEvent,
    TypingEvent,
    UserId,
    parse_event,
)
from .notifications import NotificationRouter
from .pipeline import SendOutcome, SendPipeline
from .presence import PresenceRegistry
from .rooms import DEFAULT_ROOM_SEPARATOR, resolve_room
from .transport import RedisTransport
from .typing import TypingRelay


logger = logging.getLogger(__name__)

_USER_ID = TypeAdapter(UserId)

EventHandler = Callable[[Connection, Any], Awaitable[Any]]


class ChatHub:
    """Own the presence registry and route every inbound event.

    Each inbound event runs to completion before the next event of the same
    connection is read. Registry mutations never await, so they cannot be
    interleaved with other connections' events.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        separator: str = DEFAULT_ROOM_SEPARATOR,
        max_message_length: int = 1000,
        preview_length: int = 50,
        debug_events: bool = False,
        transport: RedisTransport | None = None,
        node_id: str = "local",
        presence_interval: float = DEFAULT_PRESENCE_INTERVAL,
    ) -> None:
        self.store = store
        self.connections = ConnectionManager()
        self.presence = PresenceRegistry()
        self.separator = separator
        self.debug_events = debug_events
        self.relay: ClusterRelay | None = None
        if transport is not None and transport.configured:
            self.relay = ClusterRelay(transport, node_id=node_id, presence_interval=presence_interval)
            self.relay.bind(
                on_room=self._deliver_remote_room,
                on_notify=self._deliver_remote_notification,
                on_presence=self._broadcast_online_users_locally,
                local_snapshot=self.presence.snapshot_ids,
            )
        self.router = NotificationRouter(
            self.presence, preview_length=preview_length, relay=self.relay
        )
        self.pipeline = SendPipeline(
            store,
            self.connections,
            self.router,
            separator=separator,
            max_length=max_message_length,
            relay=self.relay,
        )
        self.typing = TypingRelay(self.connections, separator=separator, relay=self.relay)
        self._handlers: Dict[str, EventHandler] = {
            USER_ONLINE: self.user_online,
            JOIN_ROOM: self.join_room,
            LEAVE_ROOM: self.leave_room,
            SEND_MESSAGE: self.send_message,
            TYPING: self.typing_signal,
            MARK_AS_READ: self.mark_as_read,
            PING: self.ping,
            PONG: self.pong,
        }
        if debug_events:
            self._handlers[DEBUG_ROOM_INFO] = self.debug_room_info

    async def start(self) -> None:
        if self.relay is not None:
            await self.relay.start()

    async def stop(self) -> None:
        if self.relay is not None:
            await self.relay.stop()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def connect(self, websocket: WebSocket) -> Connection:
        connection = Connection(websocket)
        self.connections.register(connection)
        logger.info("Client connected", extra={"connection": connection.id})
        return connection

    async def disconnect(self, connection: Connection) -> None:
        removed = False
        if connection.user_id is not None:
            removed = self.presence.remove(connection.user_id, connection)
        self.connections.unregister(connection)
        logger.info(
            "Client disconnected",
            extra={"connection": connection.id, "user_id": connection.user_id, "presence_removed": removed},
        )
        if removed:
            await self.broadcast_online_users()

    async def dispatch(self, connection: Connection, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            await connection.emit(ERROR, {"detail": f"Unsupported event '{event}'"})
            return
        realtime_events_total.labels(event, "in").inc()
        try:
            await handler(connection, data)
        except EventValidationError as exc:
            logger.warning(
                "Dropped malformed %s event",
                event,
                extra={"connection": connection.id, "detail": exc.detail},
            )
        except Exception:
            logger.exception("Failed to handle %s event", event, extra={"connection": connection.id})
            await connection.emit(ERROR, {"detail": "Internal error"})

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------
    def online_ids(self) -> list[str]:
        online = set(self.presence.snapshot_ids())
        if self.relay is not None:
            online.update(self.relay.remote_online_ids())
        return sorted(online)

    async def broadcast_online_users(self) -> None:
        await self._broadcast_online_users_locally()
        if self.relay is not None:
            await self.relay.publish_presence()

    async def _broadcast_online_users_locally(self) -> None:
        await self.connections.broadcast_all(ONLINE_USERS, self.online_ids())

    async def user_online(self, connection: Connection, data: Any) -> None:
        if isinstance(data, dict):
            data = data.get("userId")
        try:
            user_id = _USER_ID.validate_python(data)
        except ValueError as exc:
            raise EventValidationError(USER_ONLINE, str(exc)) from exc

        previous = connection.user_id
        if previous is not None and previous != user_id:
            self.presence.remove(previous, connection)
        connection.user_id = user_id
        grew = self.presence.set_online(user_id, connection)
        logger.info("User is now online", extra={"user_id": user_id, "connection": connection.id})
        if grew or (previous is not None and previous != user_id):
            await self.broadcast_online_users()
        else:
            await connection.emit(ONLINE_USERS, self.online_ids())

    async def join_room(self, connection: Connection, data: Any) -> None:
        pair = parse_event(RoomPairEvent, JOIN_ROOM, data)
        room_id = resolve_room(pair.user1, pair.user2, separator=self.separator)
        self.connections.join(room_id, connection)
        self.presence.set_room(pair.user1, room_id, connection=connection)
        logger.info("User joined room", extra={"user_id": pair.user1, "room": room_id})

    async def leave_room(self, connection: Connection, data: Any) -> None:
        pair = parse_event(RoomPairEvent, LEAVE_ROOM, data)
        room_id = resolve_room(pair.user1, pair.user2, separator=self.separator)
        self.connections.leave(room_id, connection)
        entry = self.presence.get(pair.user1)
        if entry is not None and entry.current_room == room_id:
            self.presence.set_room(pair.user1, None, connection=connection)
        logger.info("User left room", extra={"user_id": pair.user1, "room": room_id})

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    async def send_message(self, connection: Connection, data: Any) -> SendOutcome:
        return await self.pipeline.handle_send(connection, data)

    async def typing_signal(self, connection: Connection, data: Any) -> None:
        signal = parse_event(TypingEvent, TYPING, data)
        await self.typing.relay(connection, signal)

    async def mark_as_read(self, connection: Connection, data: Any) -> None:
        receipt = parse_event(ReadReceiptEvent, MARK_AS_READ, data)
        if receipt.to is not None:
            room_ids = [resolve_room(receipt.user_id, receipt.to, separator=self.separator)]
        else:
            # Receipts without a peer go to every room this connection joined.
            room_ids = sorted(connection.rooms)
        payload = {"messageId": receipt.message_id, "readBy": receipt.user_id}
        for room_id in room_ids:
            await self.connections.broadcast(room_id, MESSAGE_READ, payload, exclude={connection})
            if self.relay is not None:
                await self.relay.publish_room(room_id, MESSAGE_READ, payload, exclude_user=receipt.user_id)

    async def ping(self, connection: Connection, data: Any) -> None:
        await connection.emit(PONG, None)

    async def pong(self, connection: Connection, data: Any) -> None:
        return None

    async def debug_room_info(self, connection: Connection, data: Any) -> None:
        pair = parse_event(RoomPairEvent, DEBUG_ROOM_INFO, data)
        room_id = resolve_room(pair.user1, pair.user2, separator=self.separator)

        def describe(user_id: str) -> dict[str, Any] | None:
            entry = self.presence.get(user_id)
            if entry is None:
                return None
            return {"connectionId": entry.connection.id, "currentRoom": entry.current_room}

        await connection.emit(
            DEBUG_ROOM_RESPONSE,
            {
                "roomId": room_id,
                "connectedSockets": [member.id for member in self.connections.members(room_id)],
                "onlineUsers": [[entry.user_id, describe(entry.user_id)] for entry in self.presence],
                "currentSocketId": connection.id,
                "user1OnlineData": describe(pair.user1),
                "user2OnlineData": describe(pair.user2),
            },
        )

    # ------------------------------------------------------------------
    # Relay callbacks
    # ------------------------------------------------------------------
    async def _deliver_remote_room(
        self, room_id: str, event: str, data: Any, exclude_user: str | None
    ) -> None:
        exclude = [
            member for member in self.connections.members(room_id)
            if exclude_user is not None and member.user_id == exclude_user
        ]
        await self.connections.broadcast(room_id, event, data, exclude=exclude)

    async def _deliver_remote_notification(
        self, recipient_id: str, room_id: str, message: dict[str, Any]
    ) -> None:
        await self.router.route(recipient_id, room_id, message, allow_forward=False)
