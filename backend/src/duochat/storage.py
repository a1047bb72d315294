"""Contract of the message persistence gateway consumed by the realtime core."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence, runtime_checkable

from .messages import MessageStatus, format_timestamp


class PersistenceError(RuntimeError):
    """Raised when the gateway is unreachable or rejects a write."""


@dataclass(slots=True, frozen=True)
class MessageDraft:
    """A validated message that has not been stored yet."""

    sender_id: str
    recipient_id: str
    text: str
    timestamp: datetime
    client_message_id: str | None = None


@dataclass(slots=True, frozen=True)
class StoredMessage:
    """A message after the gateway assigned its durable id."""

    id: str
    sender_id: str
    recipient_id: str
    text: str
    timestamp: datetime
    client_message_id: str | None = None

    def to_payload(self, status: MessageStatus = MessageStatus.DELIVERED) -> dict[str, Any]:
        return {
            "_id": self.id,
            "from": self.sender_id,
            "to": self.recipient_id,
            "message": self.text,
            "time": format_timestamp(self.timestamp),
            "messageId": self.client_message_id,
            "status": status.value,
        }


@runtime_checkable
class MessageStore(Protocol):
    async def save(self, draft: MessageDraft) -> StoredMessage:
        """Persist *draft* and return it with a durable id, or raise :class:`PersistenceError`."""

    async def query_conversation(
        self,
        user_a: str,
        user_b: str,
        *,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> Sequence[StoredMessage]:
        """Return messages exchanged between the two users in timestamp order."""
