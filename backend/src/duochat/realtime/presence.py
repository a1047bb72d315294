"""Process-wide presence registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator

from .connections import Connection


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PresenceEntry:
    user_id: str
    connection: Connection
    current_room: str | None = None

    @property
    def is_live(self) -> bool:
        return self.connection.is_open


class PresenceRegistry:
    """Single-writer mapping of online users to their connection and room.

    Only the connection event handlers mutate the registry; the send pipeline
    and notification router read it. A user id maps to exactly one entry, the
    most recent registration wins.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}

    def set_online(self, user_id: str, connection: Connection) -> bool:
        """Register *connection* for *user_id*; returns True when the online set grew."""

        previous = self._entries.get(user_id)
        self._entries[user_id] = PresenceEntry(user_id=user_id, connection=connection)
        if previous is not None and previous.connection is not connection:
            logger.info(
                "Presence entry replaced by a newer connection",
                extra={"user_id": user_id, "previous": previous.connection.id, "current": connection.id},
            )
        return previous is None

    def set_room(
        self,
        user_id: str,
        room_id: str | None,
        *,
        connection: Connection | None = None,
    ) -> bool:
        """Update the current room of *user_id*.

        When *connection* is given the update only applies if that connection
        still owns the entry.
        """

        entry = self._entries.get(user_id)
        if entry is None:
            return False
        if connection is not None and entry.connection is not connection:
            return False
        entry.current_room = room_id
        return True

    def get(self, user_id: str) -> PresenceEntry | None:
        return self._entries.get(user_id)

    def remove(self, user_id: str, connection: Connection) -> bool:
        """Drop the entry for *user_id* if it still belongs to *connection*."""

        entry = self._entries.get(user_id)
        if entry is None or entry.connection is not connection:
            return False
        del self._entries[user_id]
        return True

    def snapshot_ids(self) -> frozenset[str]:
        return frozenset(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PresenceEntry]:
        return iter(list(self._entries.values()))
