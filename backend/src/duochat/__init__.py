"""Realtime messaging and presence core for two-party chat."""

__version__ = "0.1.0"
