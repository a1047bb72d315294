"""Redis pub/sub transport used to relay realtime events between nodes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total


logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0


MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
ClientFactory = Callable[[str], Any]


@dataclass(slots=True)
class BrokerConfig:
    """Connection settings for the relay broker."""

    redis_url: str | None
    prefix: str = "duochat.realtime"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when the broker is not configured or cannot be reached."""


class Subscription:
    """Handle returned by :meth:`RedisTransport.subscribe`."""

    def __init__(self, name: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._cleanup = cleanup

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        await self._cleanup()


@dataclass(slots=True)
class _SubscriptionState:
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


def _default_client_factory(url: str) -> Any:
    return redis_asyncio.from_url(url, encoding="utf-8", decode_responses=True)


class RedisTransport:
    """JSON pub/sub over Redis with automatic re-subscription after failures."""

    def __init__(self, config: BrokerConfig, *, client_factory: ClientFactory | None = None) -> None:
        self._config = config
        self._client_factory = client_factory or _default_client_factory
        self._redis: Any | None = None
        self._states: list[_SubscriptionState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def configured(self) -> bool:
        return bool(self._config.redis_url)

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if not self.configured or self._redis is not None:
            return
        client = self._client_factory(self._config.redis_url)
        try:
            await client.ping()
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await client.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        self._redis = client
        logger.info("Connected to Redis relay", extra={"node_id": self.node_id})

    async def stop(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for state in list(self._states):
            await self._close_state(state)
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None

    def _channel(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        channel = self._channel(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._schedule_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published relay payload", extra={"channel": channel})

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        state = _SubscriptionState(channel=self._channel(topic), handler=handler)
        self._states.append(state)
        try:
            await self._attach_reader(state)
        except TransportUnavailableError:
            await self._close_state(state)
            raise

        async def cleanup() -> None:
            await self._close_state(state)

        return Subscription(state.channel, cleanup)

    async def _attach_reader(self, state: _SubscriptionState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message.get("data")
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarded malformed relay payload", extra={"channel": state.channel})
                    continue
                if not isinstance(payload, dict):
                    continue
                try:
                    await state.handler(payload)
                except Exception:
                    logger.exception("Relay handler failed", extra={"channel": state.channel})

        task = asyncio.create_task(reader(), name=f"duochat-relay-{state.channel}")
        state.task = task
        task.add_done_callback(lambda finished: self._on_reader_done(state, finished))

    def _on_reader_done(self, state: _SubscriptionState, task: asyncio.Task[Any]) -> None:
        if state.task is task:
            state.task = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Relay reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"channel": state.channel},
        )
        self._schedule_recovery("reader_stopped")

    async def _pause_state(self, state: _SubscriptionState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        if state.pubsub is not None:
            with contextlib.suppress(Exception):
                await state.pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await state.pubsub.aclose()
        state.pubsub = None
        state.suspending = False

    async def _close_state(self, state: _SubscriptionState) -> None:
        state.active = False
        await self._pause_state(state)
        if state in self._states:
            self._states.remove(state)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def _schedule_recovery(self, reason: str) -> None:
        if not self.configured:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis relay recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recover(reason), name="duochat-relay-recovery"
        )

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY)
            await asyncio.sleep(delay)
            try:
                await self._restart()
            except TransportUnavailableError:
                attempt += 1
                logger.warning(
                    "Redis relay recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        realtime_transport_restarts_total.labels(reason).inc()
        logger.info("Redis relay recovered", extra={"reason": reason, "subscriptions": len(self._states)})
        self._recovery_task = None

    async def _restart(self) -> None:
        async with self._recovery_lock:
            for state in list(self._states):
                await self._pause_state(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.aclose()
                self._redis = None
            await self.start()
            for state in [state for state in self._states if state.active]:
                await self._attach_reader(state)
