"""Conversation key resolution."""

from __future__ import annotations

DEFAULT_ROOM_SEPARATOR = "_"


def resolve_room(user_a: str, user_b: str, *, separator: str = DEFAULT_ROOM_SEPARATOR) -> str:
    """Return the canonical room identifier for an unordered pair of users.

    The identifiers are sorted before joining so ``resolve_room(a, b)`` and
    ``resolve_room(b, a)`` always agree.
    """

    first, second = sorted((str(user_a), str(user_b)))
    return f"{first}{separator}{second}"
