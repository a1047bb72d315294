from __future__ import annotations

import pytest

from duochat.realtime.rooms import resolve_room


@pytest.mark.parametrize(
    ("user_a", "user_b", "expected"),
    [
        ("A", "B", "A_B"),
        ("B", "A", "A_B"),
        ("bob", "alice", "alice_bob"),
        ("10", "9", "10_9"),
    ],
)
def test_resolve_room_is_order_independent(user_a: str, user_b: str, expected: str) -> None:
    assert resolve_room(user_a, user_b) == expected
    assert resolve_room(user_b, user_a) == expected


def test_resolve_room_uses_configured_separator() -> None:
    assert resolve_room("b", "a", separator=":") == "a:b"


def test_resolve_room_same_user_twice() -> None:
    assert resolve_room("a", "a") == "a_a"
