from __future__ import annotations

from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import chat_notifications_total
from duochat.realtime.connections import Connection
from duochat.realtime.notifications import NotificationDecision, NotificationRouter, build_preview
from duochat.realtime.presence import PresenceRegistry


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)


class RecordingRelay:
    def __init__(self, *, active: bool = True) -> None:
        self.is_active = active
        self.forwarded: list[tuple[str, str, dict[str, Any]]] = []

    async def forward_notification(self, recipient_id: str, room_id: str, message: dict[str, Any]) -> None:
        self.forwarded.append((recipient_id, room_id, message))


MESSAGE = {
    "_id": "p1",
    "from": "A",
    "to": "B",
    "message": "hello there",
    "time": "2024-01-01T00:00:00.000Z",
    "messageId": "c1",
    "status": "delivered",
}


@pytest.fixture(autouse=True)
def reset_notification_metrics() -> None:
    chat_notifications_total._samples.clear()
    yield
    chat_notifications_total._samples.clear()


def register(registry: PresenceRegistry, user_id: str, room: str | None) -> DummyWebSocket:
    websocket = DummyWebSocket()
    connection = Connection(websocket)  # type: ignore[arg-type]
    registry.set_online(user_id, connection)
    registry.set_room(user_id, room)
    return websocket


@pytest.mark.anyio("asyncio")
async def test_recipient_viewing_conversation_gets_in_app_only() -> None:
    registry = PresenceRegistry()
    websocket = register(registry, "B", "A_B")
    router = NotificationRouter(registry)

    decision = await router.route("B", "A_B", MESSAGE)

    assert decision is NotificationDecision.IN_APP
    assert [frame["type"] for frame in websocket.sent] == ["new_notification"]
    data = websocket.sent[0]["data"]
    assert data == {
        "from": "A",
        "to": "B",
        "message": "hello there",
        "preview": "hello there",
        "time": "2024-01-01T00:00:00.000Z",
        "messageId": "c1",
        "roomId": "A_B",
        "inSameRoom": True,
    }


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("room", [None, "B_C"])
async def test_recipient_elsewhere_gets_in_app_and_browser(room: str | None) -> None:
    registry = PresenceRegistry()
    websocket = register(registry, "B", room)
    router = NotificationRouter(registry)

    decision = await router.route("B", "A_B", MESSAGE)

    assert decision is NotificationDecision.IN_APP_AND_EXTERNAL
    assert [frame["type"] for frame in websocket.sent] == ["new_notification", "browser_notification"]
    assert websocket.sent[0]["data"]["inSameRoom"] is False
    assert websocket.sent[1]["data"] == {
        "from": "A",
        "message": "hello there",
        "preview": "hello there",
        "time": "2024-01-01T00:00:00.000Z",
    }
    assert chat_notifications_total.value("in_app_and_external") == 1


@pytest.mark.anyio("asyncio")
async def test_offline_recipient_gets_nothing() -> None:
    registry = PresenceRegistry()
    router = NotificationRouter(registry)

    assert await router.route("B", "A_B", MESSAGE) is NotificationDecision.NONE
    assert chat_notifications_total.value("none") == 1


@pytest.mark.anyio("asyncio")
async def test_closed_connection_is_treated_as_offline() -> None:
    registry = PresenceRegistry()
    websocket = register(registry, "B", "A_B")
    websocket.application_state = WebSocketState.DISCONNECTED
    router = NotificationRouter(registry)

    assert await router.route("B", "A_B", MESSAGE) is NotificationDecision.NONE
    assert websocket.sent == []


@pytest.mark.anyio("asyncio")
async def test_absent_recipient_is_forwarded_when_relay_active() -> None:
    registry = PresenceRegistry()
    relay = RecordingRelay()
    router = NotificationRouter(registry, relay=relay)  # type: ignore[arg-type]

    decision = await router.route("B", "A_B", MESSAGE)

    assert decision is NotificationDecision.FORWARDED
    assert relay.forwarded == [("B", "A_B", MESSAGE)]


@pytest.mark.anyio("asyncio")
async def test_forwarding_is_skipped_for_relayed_or_inactive_paths() -> None:
    registry = PresenceRegistry()
    inactive = NotificationRouter(registry, relay=RecordingRelay(active=False))  # type: ignore[arg-type]
    active_relay = RecordingRelay()
    active = NotificationRouter(registry, relay=active_relay)  # type: ignore[arg-type]

    assert await inactive.route("B", "A_B", MESSAGE) is NotificationDecision.NONE
    assert await active.route("B", "A_B", MESSAGE, allow_forward=False) is NotificationDecision.NONE
    assert active_relay.forwarded == []


@pytest.mark.anyio("asyncio")
async def test_preview_is_truncated() -> None:
    registry = PresenceRegistry()
    websocket = register(registry, "B", None)
    router = NotificationRouter(registry, preview_length=5)

    await router.route("B", "A_B", {**MESSAGE, "message": "abcdefgh"})

    assert websocket.sent[0]["data"]["preview"] == "abcde..."
    assert websocket.sent[0]["data"]["message"] == "abcdefgh"


@pytest.mark.parametrize(
    ("text", "limit", "expected"),
    [("short", 50, "short"), ("x" * 51, 50, "x" * 50 + "..."), ("x" * 50, 50, "x" * 50), ("abc", 0, "abc")],
)
def test_build_preview(text: str, limit: int, expected: str) -> None:
    assert build_preview(text, limit) == expected
