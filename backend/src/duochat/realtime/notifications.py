"""Decide how a recipient learns about a new message."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from app.monitoring.metrics import chat_notifications_total

from .events import BROWSER_NOTIFICATION, NEW_NOTIFICATION
from .presence import PresenceRegistry

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .cluster import ClusterRelay


logger = logging.getLogger(__name__)

PREVIEW_ELLIPSIS = "..."


class NotificationDecision(str, Enum):
    NONE = "none"
    IN_APP = "in_app"
    IN_APP_AND_EXTERNAL = "in_app_and_external"
    FORWARDED = "forwarded"


def build_preview(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + PREVIEW_ELLIPSIS


class NotificationRouter:
    """Route in-app and out-of-band alerts based on the recipient's presence.

    A recipient viewing the conversation only gets the in-app event; a
    recipient elsewhere in the application also gets a browser alert. Offline
    recipients get nothing, they catch up on the next history fetch.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        *,
        preview_length: int = 50,
        relay: "ClusterRelay | None" = None,
    ) -> None:
        self._registry = registry
        self._preview_length = preview_length
        self._relay = relay

    async def route(
        self,
        recipient_id: str,
        room_id: str,
        message: dict[str, Any],
        *,
        allow_forward: bool = True,
    ) -> NotificationDecision:
        entry = self._registry.get(recipient_id)
        if entry is None:
            if allow_forward and self._relay is not None and self._relay.is_active:
                await self._relay.forward_notification(recipient_id, room_id, message)
                return self._record(NotificationDecision.FORWARDED)
            logger.debug("Recipient offline, no notification sent", extra={"recipient": recipient_id})
            return self._record(NotificationDecision.NONE)

        if not entry.is_live:
            logger.debug(
                "Recipient connection already closed, treating as offline",
                extra={"recipient": recipient_id, "connection": entry.connection.id},
            )
            return self._record(NotificationDecision.NONE)

        in_same_room = entry.current_room == room_id
        text = str(message.get("message", ""))
        preview = build_preview(text, self._preview_length)
        await entry.connection.emit(
            NEW_NOTIFICATION,
            {
                "from": message.get("from"),
                "to": recipient_id,
                "message": text,
                "preview": preview,
                "time": message.get("time"),
                "messageId": message.get("messageId"),
                "roomId": room_id,
                "inSameRoom": in_same_room,
            },
        )
        if in_same_room:
            return self._record(NotificationDecision.IN_APP)

        await entry.connection.emit(
            BROWSER_NOTIFICATION,
            {
                "from": message.get("from"),
                "message": text,
                "preview": preview,
                "time": message.get("time"),
            },
        )
        return self._record(NotificationDecision.IN_APP_AND_EXTERNAL)

    @staticmethod
    def _record(decision: NotificationDecision) -> NotificationDecision:
        chat_notifications_total.labels(decision.value).inc()
        return decision
