"""Send pipeline: validate, persist, broadcast, acknowledge, notify."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from app.monitoring.metrics import chat_messages_total, chat_persist_seconds

from ..messages import MessageStatus, generate_client_message_id, utcnow
from ..storage import MessageDraft, MessageStore, PersistenceError, StoredMessage
from .connections import Connection, ConnectionManager
from .events import (
    MESSAGE_SAVED,
    RECEIVE_MESSAGE,
    SEND_MESSAGE,
    EventValidationError,
    SendMessageEvent,
    parse_event,
)
from .notifications import NotificationDecision, NotificationRouter
from .rooms import DEFAULT_ROOM_SEPARATOR, resolve_room

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .cluster import ClusterRelay


logger = logging.getLogger(__name__)

STORE_FAILURE_DETAIL = "Failed to store message"


@dataclass(slots=True)
class SendOutcome:
    """What happened to a single ``send_message`` event."""

    client_message_id: str | None
    success: bool
    room_id: str | None = None
    stored: StoredMessage | None = None
    error: str | None = None
    delivered: int = 0
    notification: NotificationDecision = NotificationDecision.NONE


class SendPipeline:
    """Turn an inbound ``send_message`` event into a stored, broadcast message.

    Persistence gates everything visible to other users: nothing is broadcast
    until the store returns a durable id, and a store failure only ever
    reaches the sender as a failed ``message_saved`` ack. The store call is the
    one await point where other events can interleave; broadcasting reads the
    room membership as it is when the store returns.
    """

    def __init__(
        self,
        store: MessageStore,
        connections: ConnectionManager,
        router: NotificationRouter,
        *,
        separator: str = DEFAULT_ROOM_SEPARATOR,
        max_length: int = 1000,
        relay: "ClusterRelay | None" = None,
        id_factory: Callable[[], str] = generate_client_message_id,
    ) -> None:
        self._store = store
        self._connections = connections
        self._router = router
        self._separator = separator
        self._max_length = max_length
        self._relay = relay
        self._id_factory = id_factory

    async def handle_send(self, connection: Connection, raw: Any) -> SendOutcome:
        try:
            event = parse_event(
                SendMessageEvent, SEND_MESSAGE, raw, context={"max_length": self._max_length}
            )
        except EventValidationError as exc:
            logger.warning(
                "Rejected send_message payload",
                extra={"connection": connection.id, "detail": exc.detail},
            )
            chat_messages_total.labels("invalid").inc()
            if exc.message_id is not None:
                await self._ack_failure(connection, exc.message_id, exc.detail)
            return SendOutcome(exc.message_id, False, error=exc.detail)

        room_id = resolve_room(event.sender, event.to, separator=self._separator)
        client_message_id = event.message_id or self._id_factory()
        draft = MessageDraft(
            sender_id=event.sender,
            recipient_id=event.to,
            text=event.message,
            timestamp=event.time or utcnow(),
            client_message_id=client_message_id,
        )

        try:
            with chat_persist_seconds.time():
                stored = await self._store.save(draft)
        except PersistenceError as exc:
            detail = str(exc) or STORE_FAILURE_DETAIL
            logger.warning(
                "Message store rejected write",
                extra={"room": room_id, "message_id": client_message_id, "detail": detail},
            )
            return await self._fail(connection, client_message_id, room_id, detail)
        except Exception:
            logger.exception(
                "Unexpected error while storing message",
                extra={"room": room_id, "message_id": client_message_id},
            )
            return await self._fail(connection, client_message_id, room_id, STORE_FAILURE_DETAIL)

        payload = stored.to_payload(MessageStatus.DELIVERED)
        payload["messageId"] = client_message_id

        delivered = await self._connections.broadcast(room_id, RECEIVE_MESSAGE, payload)
        if self._relay is not None:
            await self._relay.publish_room(room_id, RECEIVE_MESSAGE, payload)

        await connection.emit(
            MESSAGE_SAVED,
            {"messageId": client_message_id, "success": True, "_id": stored.id},
        )

        decision = await self._router.route(event.to, room_id, payload)
        chat_messages_total.labels("stored").inc()
        logger.debug(
            "Message stored and broadcast",
            extra={"room": room_id, "message_id": client_message_id, "durable_id": stored.id},
        )
        return SendOutcome(
            client_message_id,
            True,
            room_id=room_id,
            stored=stored,
            delivered=delivered,
            notification=decision,
        )

    async def _fail(
        self, connection: Connection, client_message_id: str, room_id: str, detail: str
    ) -> SendOutcome:
        chat_messages_total.labels("failed").inc()
        await self._ack_failure(connection, client_message_id, detail)
        return SendOutcome(client_message_id, False, room_id=room_id, error=detail)

    @staticmethod
    async def _ack_failure(connection: Connection, client_message_id: str, detail: str) -> None:
        await connection.emit(
            MESSAGE_SAVED,
            {"messageId": client_message_id, "success": False, "error": detail},
        )
