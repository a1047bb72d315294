"""Dedup key strategies used by the client reconciliation layer."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..messages import ensure_aware

CONTENT_BUCKET_SECONDS = 2.0


class Dedupable(Protocol):
    sender_id: str
    recipient_id: str
    text: str
    timestamp: datetime
    client_message_id: str | None
    persisted_id: str | None


class DedupKeyStrategy(Protocol):
    def keys_for(self, message: Dedupable) -> list[str]:
        """Return every key this strategy can derive, most authoritative first."""


class IdDedupKey:
    """Keys derived from the durable id and the client-generated id."""

    def keys_for(self, message: Dedupable) -> list[str]:
        keys = []
        if message.persisted_id:
            keys.append(f"id:{message.persisted_id}")
        if message.client_message_id:
            keys.append(f"client:{message.client_message_id}")
        return keys


class ContentDedupKey:
    """Fallback key built from sender, recipient, text and a time bucket.

    Lossy by construction: two identical texts between the same users inside
    one bucket collide, and two copies of one message that straddle a bucket
    boundary do not.
    """

    def __init__(self, bucket_seconds: float = CONTENT_BUCKET_SECONDS) -> None:
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        self.bucket_seconds = bucket_seconds

    def bucket(self, timestamp: datetime) -> int:
        return int(ensure_aware(timestamp).timestamp() // self.bucket_seconds)

    def keys_for(self, message: Dedupable) -> list[str]:
        bucket = self.bucket(message.timestamp)
        return [
            "content:"
            + "\x1f".join((message.sender_id, message.recipient_id, message.text, str(bucket)))
        ]


def has_identity(message: Dedupable) -> bool:
    return bool(message.persisted_id or message.client_message_id)


def select_strategy(
    message: Dedupable,
    *,
    by_id: DedupKeyStrategy,
    by_content: DedupKeyStrategy,
) -> DedupKeyStrategy:
    """Use id-based keys whenever the message carries any id."""

    return by_id if has_identity(message) else by_content
