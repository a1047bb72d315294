"""Server-side realtime messaging and presence components."""

from .connections import Connection, ConnectionManager  # noqa: F401
from .hub import ChatHub  # noqa: F401
from .notifications import NotificationDecision, NotificationRouter  # noqa: F401
from .pipeline import SendOutcome, SendPipeline  # noqa: F401
from .presence import PresenceEntry, PresenceRegistry  # noqa: F401
from .rooms import resolve_room  # noqa: F401
from .typing import TypingRelay  # noqa: F401

__all__ = [
    "ChatHub",
    "Connection",
    "ConnectionManager",
    "NotificationDecision",
    "NotificationRouter",
    "PresenceEntry",
    "PresenceRegistry",
    "SendOutcome",
    "SendPipeline",
    "TypingRelay",
    "resolve_room",
]
