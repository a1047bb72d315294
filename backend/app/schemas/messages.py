"""Schemas related to chat messages."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from duochat.messages import MessageStatus
from duochat.storage import StoredMessage


class MessageRead(BaseModel):
    """Serialized representation of a stored message, in the wire field names."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    sender: str = Field(alias="from")
    to: str
    message: str
    time: str
    message_id: str | None = Field(default=None, alias="messageId")
    status: MessageStatus = MessageStatus.DELIVERED

    @classmethod
    def from_stored(cls, stored: StoredMessage) -> "MessageRead":
        return cls.model_validate(stored.to_payload())
