"""Websocket client session for one conversation."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque

import httpx
import websockets

from ..messages import MessageStatus
from ..realtime.events import (
    BROWSER_NOTIFICATION,
    ERROR,
    JOIN_ROOM,
    LEAVE_ROOM,
    MARK_AS_READ,
    MESSAGE_READ,
    MESSAGE_SAVED,
    NEW_NOTIFICATION,
    ONLINE_USERS,
    PING,
    PONG,
    RECEIVE_MESSAGE,
    SEND_MESSAGE,
    TYPING,
    USER_ONLINE,
)
from .dedup import CONTENT_BUCKET_SECONDS
from .indicators import TYPING_IDLE_PERIOD, TYPING_QUIET_PERIOD, TypingDebouncer, TypingIndicator
from .scheduling import Scheduler
from .state import DEFAULT_ACK_TIMEOUT, ClientMessage, ConversationState


logger = logging.getLogger(__name__)

NOTIFICATION_BACKLOG = 5

Sender = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class ClientOptions:
    """Tunables for the client-side policies, in seconds."""

    ack_timeout: float = DEFAULT_ACK_TIMEOUT
    typing_quiet_period: float = TYPING_QUIET_PERIOD
    typing_idle_period: float = TYPING_IDLE_PERIOD
    content_bucket_seconds: float = CONTENT_BUCKET_SECONDS
    ws_path: str = "/ws/chat"
    history_path: str = "/api/messages/{user}/{peer}"
    request_timeout: float = 10.0


class ChatSession:
    """Keep one user's view of a conversation in sync with the server.

    The session owns a :class:`ConversationState` and applies every server
    event to it synchronously; the websocket and HTTP plumbing only moves
    frames in and out.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        peer_id: str,
        *,
        options: ClientOptions | None = None,
        scheduler: Scheduler | None = None,
        http_client: httpx.AsyncClient | None = None,
        on_browser_notification: Callable[[dict[str, Any]], Any] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.peer_id = peer_id
        self.options = options or ClientOptions()
        self.state = ConversationState(
            user_id,
            peer_id,
            ack_timeout=self.options.ack_timeout,
            content_bucket_seconds=self.options.content_bucket_seconds,
            scheduler=scheduler,
        )
        self.typing = TypingIndicator(
            peer_id, quiet_period=self.options.typing_quiet_period, scheduler=scheduler
        )
        self.debouncer = TypingDebouncer(
            self._emit_typing, idle_period=self.options.typing_idle_period, scheduler=scheduler
        )
        self.online_users: frozenset[str] = frozenset()
        self.notifications: Deque[dict[str, Any]] = deque(maxlen=NOTIFICATION_BACKLOG)
        self.errors: list[str] = []
        self._on_browser_notification = on_browser_notification
        self._http = http_client
        self._owns_http = http_client is None
        self._websocket: Any | None = None
        self._sender: Sender | None = None
        self._runner: asyncio.Task[None] | None = None
        self._synced = asyncio.Event()
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def peer_online(self) -> bool:
        return self.peer_id in self.online_users

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            root = "wss://" + self.base_url.removeprefix("https://")
        else:
            root = "ws://" + self.base_url.removeprefix("http://")
        return root + self.options.ws_path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the chat channel and return once the first sync completed.

        The connection is then kept alive in the background: after every drop
        the session reconnects, announces itself again and refetches history.
        """

        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=self.options.request_timeout)
        self._synced.clear()
        self._runner = asyncio.create_task(self.run(), name=f"duochat-client-{self.user_id}")
        synced = asyncio.ensure_future(self._synced.wait())
        try:
            await asyncio.wait({self._runner, synced}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            synced.cancel()
        if self._runner.done():
            self._runner.result()
            raise RuntimeError("Chat connection ended before the first sync")

    async def run(self) -> None:
        async for websocket in websockets.connect(self.ws_url):
            try:
                await self._serve(websocket)
            except websockets.ConnectionClosed:
                logger.info("Chat connection lost, reconnecting", extra={"user_id": self.user_id})
                continue

    async def _serve(self, websocket: Any) -> None:
        self._websocket = websocket
        self._sender = websocket.send
        try:
            await self.announce()
            try:
                await self.refresh_history()
            except httpx.HTTPError as exc:
                logger.warning("History refresh failed after connect: %s", exc)
            self._synced.set()
            async for raw in websocket:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarded malformed frame from server")
                    continue
                if isinstance(frame, dict):
                    await self.handle_frame(frame)
            logger.info("Chat connection closed", extra={"user_id": self.user_id})
        finally:
            self._sender = None
            self._websocket = None

    def attach(self, sender: Sender) -> None:
        """Use *sender* to push frames, for transports other than the built-in websocket."""

        self._sender = sender

    async def announce(self) -> None:
        await self.emit(USER_ONLINE, self.user_id)
        await self.emit(JOIN_ROOM, {"user1": self.user_id, "user2": self.peer_id})

    async def close(self) -> None:
        self.debouncer.stop()
        with contextlib.suppress(websockets.ConnectionClosed, RuntimeError):
            await self.emit(LEAVE_ROOM, {"user1": self.user_id, "user2": self.peer_id})
        websocket = self._websocket
        if self._runner is not None:
            self._runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._runner
            self._runner = None
        if websocket is not None:
            await websocket.close()
        self._websocket = None
        for task in list(self._pending):
            task.cancel()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        self.state.close()
        self.typing.reset()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def emit(self, event: str, data: Any) -> None:
        if self._sender is None:
            raise RuntimeError("Session is not connected")
        await self._sender(json.dumps({"type": event, "data": data}))

    async def send(self, text: str) -> ClientMessage:
        if not text.strip():
            raise ValueError("Cannot send an empty message")
        entry = self.state.add_local(text)
        self.debouncer.stop()
        await self._emit_message(entry)
        return entry

    async def resend(self, client_message_id: str) -> ClientMessage:
        entry = self.state.resend(client_message_id)
        await self._emit_message(entry)
        return entry

    async def _emit_message(self, entry: ClientMessage) -> None:
        try:
            await self.emit(SEND_MESSAGE, self.state.to_outbound(entry))
        except (websockets.ConnectionClosed, OSError, RuntimeError) as exc:
            # The frame never left this client; the watchdog must not confirm it.
            self.state.apply_ack(entry.client_message_id, False, error=str(exc) or type(exc).__name__)
            raise

    def input_changed(self) -> None:
        self.debouncer.keystroke()

    async def mark_read(self, message_id: str) -> None:
        await self.emit(
            MARK_AS_READ, {"messageId": message_id, "userId": self.user_id, "to": self.peer_id}
        )

    def _emit_typing(self, is_typing: bool) -> None:
        if self._sender is None:
            return
        task = asyncio.ensure_future(
            self.emit(TYPING, {"from": self.user_id, "to": self.peer_id, "isTyping": is_typing})
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def refresh_history(self) -> list[ClientMessage]:
        if self._http is None:
            raise RuntimeError("Session has no HTTP client")
        path = self.options.history_path.format(user=self.user_id, peer=self.peer_id)
        response = await self._http.get(path)
        response.raise_for_status()
        items = response.json()
        if not isinstance(items, list):
            raise ValueError("History response must be a list")
        return self.state.merge_history(items)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def handle_frame(self, frame: dict[str, Any]) -> None:
        event = frame.get("type")
        data = frame.get("data")

        if event == ONLINE_USERS and isinstance(data, list):
            self.online_users = frozenset(str(user_id) for user_id in data)
        elif event == RECEIVE_MESSAGE and isinstance(data, dict):
            if {data.get("from"), data.get("to")} == {self.user_id, self.peer_id}:
                self.state.merge(data)
        elif event == MESSAGE_SAVED and isinstance(data, dict):
            message_id = data.get("messageId")
            if isinstance(message_id, str):
                self.state.apply_ack(
                    message_id,
                    bool(data.get("success")),
                    durable_id=data.get("_id"),
                    error=data.get("error"),
                )
        elif event == TYPING and isinstance(data, dict):
            self.typing.handle(str(data.get("from")), bool(data.get("isTyping")))
        elif event == NEW_NOTIFICATION and isinstance(data, dict):
            self.notifications.appendleft(data)
        elif event == BROWSER_NOTIFICATION and isinstance(data, dict):
            if self._on_browser_notification is not None:
                self._on_browser_notification(data)
        elif event == MESSAGE_READ and isinstance(data, dict):
            message_id = data.get("messageId")
            if isinstance(message_id, str):
                self.state.apply_read(message_id)
        elif event == PING:
            await self.emit(PONG, None)
        elif event == ERROR:
            detail = data.get("detail") if isinstance(data, dict) else None
            self.errors.append(str(detail))
            logger.warning("Server reported an error: %s", detail)

    def pending(self) -> list[ClientMessage]:
        return [entry for entry in self.state.messages if entry.status is MessageStatus.SENDING]
