"""Database models package."""

from .base import Base
from .chat import ChatMessage

__all__ = ["Base", "ChatMessage"]
