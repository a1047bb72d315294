"""Cross-node relay of room broadcasts, presence snapshots and notifications."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable

from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total

from .transport import RedisTransport, Subscription, TransportUnavailableError


logger = logging.getLogger(__name__)

ROOM_TOPIC = "rooms"
PRESENCE_TOPIC = "presence"
NOTIFY_TOPIC = "notifications"

DEFAULT_PRESENCE_INTERVAL = 15.0
PRESENCE_TTL_INTERVALS = 3

RoomHandler = Callable[[str, str, Any, "str | None"], Awaitable[None]]
NotifyHandler = Callable[[str, str, dict[str, Any]], Awaitable[None]]
PresenceHandler = Callable[[], Awaitable[None]]
SnapshotProvider = Callable[[], Iterable[str]]


class ClusterRelay:
    """Share realtime traffic with other nodes through :class:`RedisTransport`.

    Every envelope carries the publishing node id so a node ignores its own
    traffic. Presence is tracked as one online set per remote node; the
    cluster-wide view is the union of those sets and the local registry.

    Each node republishes its snapshot every *presence_interval* seconds. A
    remote snapshot not refreshed for ``PRESENCE_TTL_INTERVALS`` intervals is
    dropped, so a node that died without a clean stop stops counting.
    """

    def __init__(
        self,
        transport: RedisTransport,
        *,
        node_id: str,
        presence_interval: float = DEFAULT_PRESENCE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._node_id = node_id
        self._presence_interval = presence_interval
        self._clock = clock
        self._remote_presence: Dict[str, tuple[frozenset[str], float]] = {}
        self._heartbeat: asyncio.Task[None] | None = None
        self._subscriptions: list[Subscription] = []
        self._on_room: RoomHandler | None = None
        self._on_notify: NotifyHandler | None = None
        self._on_presence: PresenceHandler | None = None
        self._local_snapshot: SnapshotProvider = lambda: ()
        self._warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def is_active(self) -> bool:
        return bool(self._subscriptions) and self._transport.connected

    def bind(
        self,
        *,
        on_room: RoomHandler,
        on_notify: NotifyHandler,
        on_presence: PresenceHandler,
        local_snapshot: SnapshotProvider,
    ) -> None:
        self._on_room = on_room
        self._on_notify = on_notify
        self._on_presence = on_presence
        self._local_snapshot = local_snapshot

    async def start(self) -> None:
        try:
            await self._transport.start()
            for topic, handler in (
                (ROOM_TOPIC, self._handle_room),
                (PRESENCE_TOPIC, self._handle_presence),
                (NOTIFY_TOPIC, self._handle_notify),
            ):
                self._subscriptions.append(await self._transport.subscribe(topic, handler))
        except TransportUnavailableError:
            logger.warning(
                "Realtime relay unavailable; operating in local-only mode",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            await self._close_subscriptions()
            return
        await self._publish(PRESENCE_TOPIC, {"action": "sync"})
        if self._presence_interval > 0:
            self._heartbeat = asyncio.create_task(self._run_heartbeat(), name="duochat-presence-heartbeat")

    async def stop(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None
        if self.is_active:
            await self._publish(PRESENCE_TOPIC, {"action": "snapshot", "online": []})
        await self._close_subscriptions()
        self._remote_presence.clear()
        await self._transport.stop()

    async def _close_subscriptions(self) -> None:
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()

    @property
    def presence_ttl(self) -> float:
        return self._presence_interval * PRESENCE_TTL_INTERVALS

    def _is_fresh(self, seen_at: float) -> bool:
        return self._presence_interval <= 0 or self._clock() - seen_at <= self.presence_ttl

    def remote_online_ids(self) -> frozenset[str]:
        merged: set[str] = set()
        for online, seen_at in self._remote_presence.values():
            if self._is_fresh(seen_at):
                merged.update(online)
        return frozenset(merged)

    async def prune_stale_presence(self) -> list[str]:
        """Forget remote nodes whose snapshot expired; returns their node ids."""

        stale = [
            origin
            for origin, (_, seen_at) in self._remote_presence.items()
            if not self._is_fresh(seen_at)
        ]
        for origin in stale:
            del self._remote_presence[origin]
        if stale:
            logger.info("Dropped expired presence from nodes %s", ", ".join(sorted(stale)))
            if self._on_presence is not None:
                await self._on_presence()
        return stale

    async def _run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._presence_interval)
            try:
                await self.publish_presence()
                await self.prune_stale_presence()
            except Exception:
                logger.exception("Presence heartbeat failed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def publish_room(
        self, room_id: str, event: str, data: Any, *, exclude_user: str | None = None
    ) -> None:
        if not self.is_active:
            return
        await self._publish(
            ROOM_TOPIC,
            {"room_id": room_id, "event": event, "data": data, "exclude_user": exclude_user},
        )

    async def publish_presence(self) -> None:
        if not self.is_active:
            return
        await self._publish(
            PRESENCE_TOPIC,
            {"action": "snapshot", "online": sorted(self._local_snapshot())},
        )

    async def forward_notification(
        self, recipient_id: str, room_id: str, message: dict[str, Any]
    ) -> None:
        if not self.is_active:
            return
        await self._publish(
            NOTIFY_TOPIC,
            {"recipient": recipient_id, "room_id": room_id, "message": message},
        )

    async def _publish(self, topic: str, payload: dict[str, Any]) -> None:
        envelope = {**payload, "origin": self._node_id}
        try:
            await self._transport.publish(topic, envelope)
        except TransportUnavailableError:
            if not self._warning_logged:
                logger.warning(
                    "Realtime relay unavailable while publishing %s update; delivering locally only",
                    topic,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._warning_logged = True
            realtime_publish_errors_total.labels(topic, "unavailable").inc()
        else:
            self._warning_logged = False
            realtime_events_total.labels(topic, "relay_out").inc()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def _is_own(self, message: dict[str, Any]) -> bool:
        return message.get("origin") == self._node_id

    async def _handle_room(self, message: dict[str, Any]) -> None:
        if self._is_own(message) or self._on_room is None:
            return
        room_id = message.get("room_id")
        event = message.get("event")
        if not isinstance(room_id, str) or not isinstance(event, str):
            return
        exclude_user = message.get("exclude_user")
        await self._on_room(room_id, event, message.get("data"), exclude_user)
        realtime_events_total.labels(event, "relay_in").inc()

    async def _handle_presence(self, message: dict[str, Any]) -> None:
        if self._is_own(message):
            return
        origin = message.get("origin")
        if not isinstance(origin, str):
            return
        action = message.get("action")
        if action == "sync":
            await self.publish_presence()
            return
        online = message.get("online")
        if not isinstance(online, list):
            return
        ids = frozenset(str(user_id) for user_id in online)
        if ids:
            self._remote_presence[origin] = (ids, self._clock())
        else:
            self._remote_presence.pop(origin, None)
        if self._on_presence is not None:
            await self._on_presence()

    async def _handle_notify(self, message: dict[str, Any]) -> None:
        if self._is_own(message) or self._on_notify is None:
            return
        recipient = message.get("recipient")
        room_id = message.get("room_id")
        payload = message.get("message")
        if not isinstance(recipient, str) or not isinstance(room_id, str) or not isinstance(payload, dict):
            return
        await self._on_notify(recipient, room_id, payload)
