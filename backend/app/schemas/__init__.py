"""Pydantic schemas exposed by the HTTP API."""

from .messages import MessageRead

__all__ = ["MessageRead"]
