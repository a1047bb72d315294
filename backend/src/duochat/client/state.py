"""Client-side reconciliation of optimistic sends, room echoes and history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping

from ..messages import (
    MessageStatus,
    format_timestamp,
    generate_client_message_id,
    parse_timestamp,
    utcnow,
)
from .dedup import CONTENT_BUCKET_SECONDS, ContentDedupKey, IdDedupKey, has_identity
from .scheduling import LoopScheduler, Scheduler, TimerHandle


logger = logging.getLogger(__name__)

DEFAULT_ACK_TIMEOUT = 2.0


@dataclass(eq=False)
class ClientMessage:
    """One entry of the local conversation sequence."""

    sender_id: str
    recipient_id: str
    text: str
    timestamp: datetime
    status: MessageStatus
    client_message_id: str | None = None
    persisted_id: str | None = None
    error: str | None = None
    watchdog: TimerHandle | None = field(default=None, repr=False)

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        default_status: MessageStatus = MessageStatus.DELIVERED,
    ) -> "ClientMessage":
        status_raw = payload.get("status")
        try:
            status = MessageStatus(status_raw) if status_raw else default_status
        except ValueError:
            status = default_status
        persisted = payload.get("_id")
        client_id = payload.get("messageId")
        return cls(
            sender_id=str(payload.get("from", "")),
            recipient_id=str(payload.get("to", "")),
            text=str(payload.get("message", "")),
            timestamp=parse_timestamp(payload.get("time")) or utcnow(),
            status=status,
            client_message_id=str(client_id) if client_id else None,
            persisted_id=str(persisted) if persisted else None,
        )

    def cancel_watchdog(self) -> None:
        if self.watchdog is not None:
            self.watchdog.cancel()
            self.watchdog = None


class ConversationState:
    """Ordered message sequence plus the dedup keys it already represents.

    Every entry is indexed under all of its keys: the durable id, the client
    id, and the content key. Incoming messages that carry an id are matched
    on ids only; the content key is consulted only when an incoming message
    has no id at all.
    """

    def __init__(
        self,
        user_id: str,
        peer_id: str,
        *,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        content_bucket_seconds: float = CONTENT_BUCKET_SECONDS,
        scheduler: Scheduler | None = None,
        on_change: Callable[["ConversationState"], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self.peer_id = peer_id
        self.ack_timeout = ack_timeout
        self._scheduler = scheduler or LoopScheduler()
        self._by_id = IdDedupKey()
        self._by_content = ContentDedupKey(content_bucket_seconds)
        self._messages: list[ClientMessage] = []
        self._known: Dict[str, ClientMessage] = {}
        self._on_change = on_change

    @property
    def messages(self) -> list[ClientMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Key bookkeeping
    # ------------------------------------------------------------------
    def _all_keys(self, message: ClientMessage) -> list[str]:
        return self._by_id.keys_for(message) + self._by_content.keys_for(message)

    def _lookup_keys(self, message: ClientMessage) -> list[str]:
        if has_identity(message):
            return self._by_id.keys_for(message)
        return self._by_content.keys_for(message)

    def _lookup(self, message: ClientMessage) -> ClientMessage | None:
        for key in self._lookup_keys(message):
            entry = self._known.get(key)
            if entry is not None:
                return entry
        return None

    def _register(self, entry: ClientMessage, *aliases: ClientMessage) -> None:
        for source in (entry, *aliases):
            for key in self._all_keys(source):
                self._known.setdefault(key, entry)

    def is_known(self, message: ClientMessage | Mapping[str, Any]) -> bool:
        return self._lookup(self._coerce(message)) is not None

    def find(self, client_message_id: str) -> ClientMessage | None:
        return self._known.get(f"client:{client_message_id}")

    @staticmethod
    def _coerce(
        message: ClientMessage | Mapping[str, Any],
        default_status: MessageStatus = MessageStatus.DELIVERED,
    ) -> ClientMessage:
        if isinstance(message, ClientMessage):
            return message
        return ClientMessage.from_payload(message, default_status=default_status)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    # ------------------------------------------------------------------
    # Local sends
    # ------------------------------------------------------------------
    def add_local(
        self,
        text: str,
        *,
        client_message_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> ClientMessage:
        """Append an optimistic entry in ``sending`` and arm its ack watchdog."""

        entry = ClientMessage(
            sender_id=self.user_id,
            recipient_id=self.peer_id,
            text=text.strip(),
            timestamp=timestamp or utcnow(),
            status=MessageStatus.SENDING,
            client_message_id=client_message_id or generate_client_message_id(),
        )
        self._messages.append(entry)
        self._register(entry)
        self._arm_watchdog(entry)
        self._changed()
        return entry

    def resend(self, client_message_id: str) -> ClientMessage:
        """Move a failed entry back to ``sending``; it keeps its client id."""

        entry = self.find(client_message_id)
        if entry is None:
            raise KeyError(client_message_id)
        if entry.status is not MessageStatus.FAILED:
            raise ValueError(f"message {client_message_id} has not failed")
        entry.status = MessageStatus.SENDING
        entry.error = None
        self._arm_watchdog(entry)
        self._changed()
        return entry

    def to_outbound(self, entry: ClientMessage) -> dict[str, Any]:
        return {
            "from": entry.sender_id,
            "to": entry.recipient_id,
            "message": entry.text,
            "time": format_timestamp(entry.timestamp),
            "messageId": entry.client_message_id,
        }

    def _arm_watchdog(self, entry: ClientMessage) -> None:
        entry.cancel_watchdog()
        entry.watchdog = self._scheduler.call_later(self.ack_timeout, self._on_watchdog, entry)

    def _on_watchdog(self, entry: ClientMessage) -> None:
        entry.watchdog = None
        if entry.status is MessageStatus.SENDING:
            # Best effort only: persistence was never confirmed for this entry.
            logger.info(
                "No ack within %.1fs, assuming message was sent",
                self.ack_timeout,
                extra={"message_id": entry.client_message_id},
            )
            entry.status = MessageStatus.SENT
            self._changed()

    # ------------------------------------------------------------------
    # Server events
    # ------------------------------------------------------------------
    def merge(self, incoming: ClientMessage | Mapping[str, Any]) -> list[ClientMessage]:
        """Merge a room broadcast; a message already represented is discarded."""

        message = self._coerce(incoming)
        existing = self._lookup(message)
        if existing is not None:
            self._register(existing, message)
            return self.messages
        message.status = MessageStatus.DELIVERED
        self._messages.append(message)
        self._register(message)
        self._changed()
        return self.messages

    def apply_ack(
        self,
        client_message_id: str,
        success: bool,
        *,
        durable_id: str | None = None,
        error: str | None = None,
    ) -> ClientMessage | None:
        entry = self.find(client_message_id)
        if entry is None:
            logger.debug("Ack for unknown message", extra={"message_id": client_message_id})
            return None
        entry.cancel_watchdog()
        if success:
            if durable_id and entry.persisted_id is None:
                entry.persisted_id = durable_id
                self._register(entry)
            if entry.status in (MessageStatus.SENDING, MessageStatus.FAILED):
                entry.status = MessageStatus.SENT
        else:
            entry.status = MessageStatus.FAILED
            entry.error = error
        self._changed()
        return entry

    def apply_read(self, message_id: str) -> ClientMessage | None:
        entry = self._known.get(f"id:{message_id}") or self._known.get(f"client:{message_id}")
        if entry is None or entry.sender_id != self.user_id:
            return None
        entry.cancel_watchdog()
        entry.status = MessageStatus.READ
        self._changed()
        return entry

    def merge_history(self, items: Iterable[ClientMessage | Mapping[str, Any]]) -> list[ClientMessage]:
        """Fold a fetched conversation history into the local sequence.

        History order wins for everything the server returned; local entries
        the server does not know yet (pending or failed sends) stay at the end
        in their original order.
        """

        merged: list[ClientMessage] = []
        placed: set[int] = set()
        for item in items:
            message = self._coerce(item)
            existing = self._lookup(message)
            if existing is None:
                self._register(message)
                merged.append(message)
                placed.add(id(message))
                continue
            if id(existing) in placed:
                continue
            if existing.persisted_id is None and message.persisted_id:
                existing.persisted_id = message.persisted_id
            if existing.status in (MessageStatus.SENDING, MessageStatus.FAILED):
                existing.cancel_watchdog()
                existing.status = MessageStatus.SENT
                existing.error = None
            self._register(existing, message)
            merged.append(existing)
            placed.add(id(existing))

        merged.extend(entry for entry in self._messages if id(entry) not in placed)
        self._messages = merged
        self._changed()
        return self.messages

    def close(self) -> None:
        for entry in self._messages:
            entry.cancel_watchdog()
