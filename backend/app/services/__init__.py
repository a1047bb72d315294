"""Application service helpers."""

from .chat import get_chat_hub, get_message_store, shutdown_realtime, startup_realtime
from .message_store import SqlMessageStore

__all__ = [
    "SqlMessageStore",
    "get_chat_hub",
    "get_message_store",
    "shutdown_realtime",
    "startup_realtime",
]
