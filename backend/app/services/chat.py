"""Process-wide chat hub and its lifecycle hooks."""

from __future__ import annotations

import logging
import uuid

from duochat.realtime.hub import ChatHub
from duochat.realtime.transport import BrokerConfig, RedisTransport

from app.config import Settings, get_settings
from app.database import SessionLocal, engine
from app.models import Base
from app.services.message_store import SqlMessageStore


logger = logging.getLogger(__name__)


def build_chat_hub(settings: Settings, store: SqlMessageStore) -> ChatHub:
    node_id = settings.realtime_node_id or uuid.uuid4().hex
    transport = RedisTransport(
        BrokerConfig(
            redis_url=settings.realtime_redis_url,
            prefix=settings.realtime_namespace,
            node_id=node_id,
        )
    )
    return ChatHub(
        store,
        separator=settings.chat_room_separator,
        max_message_length=settings.chat_message_max_length,
        preview_length=settings.notification_preview_length,
        debug_events=settings.chat_debug_events,
        transport=transport,
        node_id=node_id,
        presence_interval=settings.realtime_presence_interval_seconds,
    )


settings = get_settings()

message_store = SqlMessageStore(SessionLocal)
chat_hub = build_chat_hub(settings, message_store)


async def startup_realtime() -> None:
    Base.metadata.create_all(engine)
    await chat_hub.start()


async def shutdown_realtime() -> None:
    await chat_hub.stop()


def get_chat_hub() -> ChatHub:
    return chat_hub


def get_message_store() -> SqlMessageStore:
    return message_store
