from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Sequence

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import chat_messages_total, chat_persist_seconds
from duochat.realtime.hub import ChatHub
from duochat.realtime.notifications import NotificationDecision
from duochat.storage import MessageDraft, PersistenceError, StoredMessage


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def events(self, name: str) -> list[Any]:
        return [frame["data"] for frame in self.sent if frame["type"] == name]


class MemoryStore:
    def __init__(self) -> None:
        self.saved: list[StoredMessage] = []

    async def save(self, draft: MessageDraft) -> StoredMessage:
        stored = StoredMessage(
            id=f"p{len(self.saved) + 1}",
            sender_id=draft.sender_id,
            recipient_id=draft.recipient_id,
            text=draft.text,
            timestamp=draft.timestamp,
            client_message_id=draft.client_message_id,
        )
        self.saved.append(stored)
        return stored

    async def query_conversation(
        self, user_a: str, user_b: str, *, limit: int | None = None, newest_first: bool = False
    ) -> Sequence[StoredMessage]:
        return list(self.saved)


class FailingStore(MemoryStore):
    async def save(self, draft: MessageDraft) -> StoredMessage:
        raise PersistenceError("database is down")


class BrokenStore(MemoryStore):
    async def save(self, draft: MessageDraft) -> StoredMessage:
        raise KeyError("unexpected")


class GatedStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def save(self, draft: MessageDraft) -> StoredMessage:
        self.entered.set()
        await self.release.wait()
        return await super().save(draft)


@pytest.fixture(autouse=True)
def reset_message_metrics() -> None:
    chat_messages_total._samples.clear()
    yield
    chat_messages_total._samples.clear()


async def online(hub: ChatHub, user_id: str, peer_id: str, *, join: bool = True):
    websocket = DummyWebSocket()
    connection = hub.connect(websocket)  # type: ignore[arg-type]
    await hub.dispatch(connection, "user_online", user_id)
    if join:
        await hub.dispatch(connection, "join_room", {"user1": user_id, "user2": peer_id})
    websocket.sent.clear()
    return connection, websocket


@pytest.mark.anyio("asyncio")
async def test_message_reaches_room_and_sender_gets_ack() -> None:
    hub = ChatHub(MemoryStore())
    connection_a, ws_a = await online(hub, "A", "B")
    _, ws_b = await online(hub, "B", "A")

    outcome = await hub.send_message(
        connection_a, {"from": "A", "to": "B", "message": "hi", "clientMessageId": "c1"}
    )

    assert outcome.success is True
    assert outcome.room_id == "A_B"
    [received] = ws_b.events("receive_message")
    assert received["_id"] == "p1"
    assert received["status"] == "delivered"
    assert received["messageId"] == "c1"
    assert received["from"] == "A" and received["to"] == "B"
    assert ws_a.events("message_saved") == [{"messageId": "c1", "success": True, "_id": "p1"}]
    assert ws_a.events("receive_message") == [received]

    [notification] = ws_b.events("new_notification")
    assert notification["inSameRoom"] is True
    assert notification["roomId"] == "A_B"
    assert ws_b.events("browser_notification") == []
    assert outcome.notification is NotificationDecision.IN_APP
    assert chat_messages_total.value("stored") == 1


@pytest.mark.anyio("asyncio")
async def test_store_failure_never_broadcasts() -> None:
    hub = ChatHub(FailingStore())
    connection_a, ws_a = await online(hub, "A", "B")
    _, ws_b = await online(hub, "B", "A")

    outcome = await hub.send_message(
        connection_a, {"from": "A", "to": "B", "message": "hi", "messageId": "c1"}
    )

    assert outcome.success is False
    assert ws_a.events("message_saved") == [
        {"messageId": "c1", "success": False, "error": "database is down"}
    ]
    assert ws_a.events("receive_message") == []
    assert ws_b.sent == []
    assert chat_messages_total.value("failed") == 1


@pytest.mark.anyio("asyncio")
async def test_unexpected_store_error_is_reported_as_failed_ack() -> None:
    hub = ChatHub(BrokenStore())
    connection_a, ws_a = await online(hub, "A", "B")

    await hub.dispatch(connection_a, "send_message", {"from": "A", "to": "B", "message": "x", "messageId": "c9"})

    assert ws_a.events("message_saved") == [
        {"messageId": "c9", "success": False, "error": "Failed to store message"}
    ]
    assert ws_a.events("error") == []


@pytest.mark.anyio("asyncio")
async def test_sender_outside_room_still_receives_ack() -> None:
    hub = ChatHub(MemoryStore())
    connection_a, ws_a = await online(hub, "A", "B", join=False)
    _, ws_b = await online(hub, "B", "A")

    await hub.send_message(connection_a, {"from": "A", "to": "B", "message": "hello", "messageId": "c2"})

    assert ws_a.events("receive_message") == []
    assert ws_a.events("message_saved")[0]["success"] is True
    assert len(ws_b.events("receive_message")) == 1


@pytest.mark.anyio("asyncio")
async def test_sender_disconnecting_mid_persist_does_not_block_delivery() -> None:
    store = GatedStore()
    hub = ChatHub(store)
    connection_a, ws_a = await online(hub, "A", "B")
    _, ws_b = await online(hub, "B", "A")

    task = asyncio.create_task(
        hub.send_message(connection_a, {"from": "A", "to": "B", "message": "bye", "messageId": "c3"})
    )
    await store.entered.wait()
    ws_a.application_state = WebSocketState.DISCONNECTED
    await hub.disconnect(connection_a)
    store.release.set()
    outcome = await task

    assert outcome.success is True
    assert ws_a.events("message_saved") == []
    assert [item["_id"] for item in ws_b.events("receive_message")] == ["p1"]
    assert "A" not in hub.presence


@pytest.mark.anyio("asyncio")
async def test_server_assigns_client_id_when_missing() -> None:
    store = MemoryStore()
    hub = ChatHub(store)
    connection_a, ws_a = await online(hub, "A", "B")
    hub.pipeline._id_factory = lambda: "msg_1_abc"

    outcome = await hub.send_message(connection_a, {"from": "A", "to": "B", "message": "  padded  "})

    assert outcome.client_message_id == "msg_1_abc"
    assert store.saved[0].text == "padded"
    assert ws_a.events("message_saved")[0]["messageId"] == "msg_1_abc"


@pytest.mark.anyio("asyncio")
async def test_client_supplied_time_is_kept() -> None:
    store = MemoryStore()
    hub = ChatHub(store)
    connection_a, ws_a = await online(hub, "A", "B")

    await hub.send_message(
        connection_a,
        {"from": "A", "to": "B", "message": "t", "messageId": "c4", "time": "2024-05-01T10:00:00.000Z"},
    )

    assert ws_a.events("receive_message")[0]["time"] == "2024-05-01T10:00:00.000Z"


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "payload",
    [
        {"from": "A", "to": "B", "message": "   ", "messageId": "bad1"},
        {"from": "A", "to": "A", "message": "self", "messageId": "bad1"},
        {"from": "A", "to": "B", "message": "x" * 1001, "messageId": "bad1"},
        {"from": "A", "message": "no recipient", "messageId": "bad1"},
    ],
)
async def test_invalid_payload_with_id_gets_failed_ack(payload: dict[str, Any]) -> None:
    store = MemoryStore()
    hub = ChatHub(store)
    connection_a, ws_a = await online(hub, "A", "B")
    _, ws_b = await online(hub, "B", "A")

    outcome = await hub.send_message(connection_a, payload)

    assert outcome.success is False
    [ack] = ws_a.events("message_saved")
    assert ack["messageId"] == "bad1"
    assert ack["success"] is False
    assert ack["error"]
    assert store.saved == []
    assert ws_b.sent == []
    assert chat_messages_total.value("invalid") == 1


@pytest.mark.anyio("asyncio")
async def test_invalid_payload_without_id_is_dropped() -> None:
    hub = ChatHub(MemoryStore())
    connection_a, ws_a = await online(hub, "A", "B")

    await hub.dispatch(connection_a, "send_message", ["not", "an", "object"])
    await hub.dispatch(connection_a, "send_message", {"from": "A", "to": "B", "message": ""})

    assert ws_a.sent == []


@pytest.mark.anyio("asyncio")
async def test_message_length_limit_follows_hub_setting() -> None:
    hub = ChatHub(MemoryStore(), max_message_length=5)
    connection_a, ws_a = await online(hub, "A", "B")

    await hub.send_message(connection_a, {"from": "A", "to": "B", "message": "12345", "messageId": "ok"})
    await hub.send_message(connection_a, {"from": "A", "to": "B", "message": "123456", "messageId": "no"})

    acks = {ack["messageId"]: ack["success"] for ack in ws_a.events("message_saved")}
    assert acks == {"ok": True, "no": False}


@pytest.mark.anyio("asyncio")
async def test_persist_duration_is_observed() -> None:
    hub = ChatHub(MemoryStore())
    connection_a, _ = await online(hub, "A", "B")
    before = chat_persist_seconds.count()

    await hub.send_message(connection_a, {"from": "A", "to": "B", "message": "m", "messageId": "c5"})

    assert chat_persist_seconds.count() == before + 1


def test_stored_message_payload_shape() -> None:
    stored = StoredMessage(
        id="p1",
        sender_id="A",
        recipient_id="B",
        text="hi",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    payload = replace(stored, client_message_id="c1").to_payload()
    assert payload == {
        "_id": "p1",
        "from": "A",
        "to": "B",
        "message": "hi",
        "time": "2024-01-01T00:00:00.000Z",
        "messageId": "c1",
        "status": "delivered",
    }
