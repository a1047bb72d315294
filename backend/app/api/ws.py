"""WebSocket endpoint carrying the chat event protocol."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

import anyio
from fastapi import APIRouter, Depends, WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from duochat.realtime.connections import safe_send_json
from duochat.realtime.events import ERROR
from duochat.realtime.hub import ChatHub

from app.config import get_settings
from app.services.chat import get_chat_hub

router = APIRouter(prefix="/ws", tags=["ws"])

logger = logging.getLogger(__name__)

settings = get_settings()

T = TypeVar("T")

PING_FRAME: Dict[str, Any] = {"type": "ping", "data": None}


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or PING_FRAME
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def decode_frame(raw_message: str) -> tuple[str, Any] | None:
    """Split a text frame into ``(event, data)``; ``None`` when it is not a valid frame."""

    try:
        payload = json.loads(raw_message)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    event = payload.get("type")
    if not isinstance(event, str) or not event:
        return None
    return event, payload.get("data")


@router.websocket("/chat")
async def websocket_chat(
    websocket: WebSocket,
    hub: ChatHub = Depends(get_chat_hub),
) -> None:
    """Bidirectional chat channel; the client identifies itself with ``user_online``."""

    await websocket.accept()
    connection = hub.connect(websocket)
    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            if not raw_message or not raw_message.strip():
                continue
            frame = decode_frame(raw_message)
            if frame is None:
                logger.debug("Malformed frame on connection %s", connection.id)
                await connection.emit(ERROR, {"detail": "Malformed frame"})
                continue
            event, data = frame
            await hub.dispatch(connection, event, data)
    finally:
        # Presence must be updated even when the server task is being cancelled.
        with anyio.CancelScope(shield=True):
            await hub.disconnect(connection)
