"""Metric registry and the chat relay's metric definitions."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
