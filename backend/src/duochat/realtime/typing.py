"""Stateless relay of typing indicators."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .connections import Connection, ConnectionManager
from .events import TYPING, TypingEvent
from .rooms import DEFAULT_ROOM_SEPARATOR, resolve_room

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .cluster import ClusterRelay


class TypingRelay:
    """Re-emit ``typing`` signals to every room member except the sender."""

    def __init__(
        self,
        connections: ConnectionManager,
        *,
        separator: str = DEFAULT_ROOM_SEPARATOR,
        relay: "ClusterRelay | None" = None,
    ) -> None:
        self._connections = connections
        self._separator = separator
        self._relay = relay

    async def relay(self, source: Connection | None, signal: TypingEvent) -> int:
        room_id = resolve_room(signal.sender, signal.to, separator=self._separator)
        payload = {"from": signal.sender, "isTyping": signal.is_typing}
        exclude = {source} if source is not None else None
        delivered = await self._connections.broadcast(room_id, TYPING, payload, exclude=exclude)
        if self._relay is not None:
            await self._relay.publish_room(room_id, TYPING, payload, exclude_user=signal.sender)
        return delivered
