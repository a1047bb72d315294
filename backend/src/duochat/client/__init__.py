"""Client-side reconciliation and typing policies."""

from .dedup import ContentDedupKey, DedupKeyStrategy, IdDedupKey, select_strategy  # noqa: F401
from .indicators import TypingDebouncer, TypingIndicator  # noqa: F401
from .session import ChatSession, ClientOptions  # noqa: F401
from .state import ClientMessage, ConversationState  # noqa: F401

__all__ = [
    "ChatSession",
    "ClientMessage",
    "ClientOptions",
    "ContentDedupKey",
    "ConversationState",
    "DedupKeyStrategy",
    "IdDedupKey",
    "TypingDebouncer",
    "TypingIndicator",
    "select_strategy",
]
