"""Wire-level event names and validation schemas for the chat channel."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Type, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StringConstraints,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

# Client -> server
USER_ONLINE = "user_online"
JOIN_ROOM = "join_room"
LEAVE_ROOM = "leave_room"
SEND_MESSAGE = "send_message"
TYPING = "typing"
MARK_AS_READ = "mark_as_read"
DEBUG_ROOM_INFO = "debug_room_info"
PING = "ping"

# Server -> client
ONLINE_USERS = "online_users"
RECEIVE_MESSAGE = "receive_message"
MESSAGE_SAVED = "message_saved"
NEW_NOTIFICATION = "new_notification"
BROWSER_NOTIFICATION = "browser_notification"
MESSAGE_READ = "message_read"
DEBUG_ROOM_RESPONSE = "debug_room_response"
PONG = "pong"
ERROR = "error"


def _coerce_identifier(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


UserId = Annotated[
    str,
    BeforeValidator(_coerce_identifier),
    StringConstraints(strip_whitespace=True, min_length=1, max_length=128),
]


class _EventModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RoomPairEvent(_EventModel):
    """Payload of ``join_room`` / ``leave_room``."""

    user1: UserId
    user2: UserId


class SendMessageEvent(_EventModel):
    """Payload of ``send_message``.

    The maximum text length is read from the ``max_length`` validation
    context so it follows the runtime settings.
    """

    sender: UserId = Field(alias="from")
    to: UserId
    message: str
    time: datetime | None = None
    message_id: str | None = Field(
        default=None,
        alias="messageId",
        validation_alias=AliasChoices("messageId", "clientMessageId"),
        max_length=128,
    )

    @field_validator("message")
    @classmethod
    def normalize_text(cls, value: str, info: ValidationInfo) -> str:
        text = value.strip()
        if not text:
            raise ValueError("message must not be empty")
        max_length = (info.context or {}).get("max_length")
        if max_length is not None and len(text) > max_length:
            raise ValueError(f"message exceeds maximum length of {max_length} characters")
        return text

    @field_validator("message_id", mode="before")
    @classmethod
    def blank_message_id(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def distinct_participants(self) -> "SendMessageEvent":
        if self.sender == self.to:
            raise ValueError("sender and recipient must differ")
        return self


class TypingEvent(_EventModel):
    """Payload of ``typing``."""

    sender: UserId = Field(alias="from")
    to: UserId
    is_typing: StrictBool = Field(alias="isTyping")


class ReadReceiptEvent(_EventModel):
    """Payload of ``mark_as_read``."""

    message_id: str = Field(alias="messageId", min_length=1)
    user_id: UserId = Field(alias="userId")
    to: UserId | None = None


class EventValidationError(ValueError):
    """Raised when an inbound event payload is malformed."""

    def __init__(self, event: str, detail: str, *, message_id: str | None = None) -> None:
        super().__init__(f"{event}: {detail}")
        self.event = event
        self.detail = detail
        self.message_id = message_id


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


_ModelT = TypeVar("_ModelT", bound=BaseModel)


def parse_event(
    model: Type[_ModelT],
    event: str,
    data: Any,
    *,
    context: dict[str, Any] | None = None,
) -> _ModelT:
    try:
        return model.model_validate(data, context=context)
    except ValidationError as exc:
        message_id = None
        if isinstance(data, dict):
            candidate = data.get("messageId") or data.get("clientMessageId")
            if isinstance(candidate, str) and candidate.strip():
                message_id = candidate
        raise EventValidationError(event, _describe(exc), message_id=message_id) from exc
