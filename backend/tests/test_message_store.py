from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models import ChatMessage
from app.services.message_store import SqlMessageStore
from duochat.storage import MessageDraft, MessageStore, PersistenceError

BASE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def draft(sender: str, recipient: str, text: str, offset: int, client_id: str | None = None) -> MessageDraft:
    return MessageDraft(
        sender_id=sender,
        recipient_id=recipient,
        text=text,
        timestamp=BASE + timedelta(seconds=offset),
        client_message_id=client_id,
    )


def test_sql_store_satisfies_protocol(message_store) -> None:
    assert isinstance(message_store, MessageStore)


@pytest.mark.anyio("asyncio")
async def test_save_assigns_durable_id_and_keeps_fields(message_store, db_session) -> None:
    stored = await message_store.save(draft("A", "B", "hi", 0, "c1"))

    assert stored.id == "1"
    assert stored.client_message_id == "c1"
    assert stored.timestamp == BASE
    row = db_session.get(ChatMessage, 1)
    assert row is not None
    assert (row.sender_id, row.recipient_id, row.content) == ("A", "B", "hi")


@pytest.mark.anyio("asyncio")
async def test_conversation_query_is_pair_scoped_and_ordered(message_store) -> None:
    await message_store.save(draft("A", "B", "one", 0))
    await message_store.save(draft("B", "A", "two", 1))
    await message_store.save(draft("A", "C", "elsewhere", 2))
    await message_store.save(draft("A", "B", "three", 3))

    forward = await message_store.query_conversation("B", "A")
    backward = await message_store.query_conversation("A", "B", newest_first=True)

    assert [item.text for item in forward] == ["one", "two", "three"]
    assert [item.text for item in backward] == ["three", "two", "one"]


@pytest.mark.anyio("asyncio")
async def test_limit_keeps_the_newest_messages(message_store) -> None:
    for index in range(5):
        await message_store.save(draft("A", "B", f"m{index}", index))

    recent = await message_store.query_conversation("A", "B", limit=2)

    assert [item.text for item in recent] == ["m3", "m4"]


@pytest.mark.anyio("asyncio")
async def test_database_errors_become_persistence_errors(test_engine, session_factory) -> None:
    store = SqlMessageStore(session_factory)
    ChatMessage.__table__.drop(test_engine)

    with pytest.raises(PersistenceError):
        await store.save(draft("A", "B", "hi", 0))
    with pytest.raises(PersistenceError):
        await store.query_conversation("A", "B")

    ChatMessage.__table__.create(test_engine)
