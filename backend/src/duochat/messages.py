"""Message primitives shared by the server pipeline and the client state."""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from enum import Enum

_BASE36 = string.digits + string.ascii_lowercase


class MessageStatus(str, Enum):
    """Lifecycle of a message as seen by the sending client."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


def generate_client_message_id(now: float | None = None) -> str:
    """Build a ``msg_<epoch-ms>_<random>`` identifier for messages sent without one."""

    millis = int((time.time() if now is None else now) * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"msg_{millis}_{suffix}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render *value* the way browsers do with ``Date.toISOString``."""

    return ensure_aware(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))
