"""Typing indicator policies for both ends of a conversation."""

from __future__ import annotations

from typing import Any, Callable

from .scheduling import LoopScheduler, Scheduler, TimerHandle

TYPING_QUIET_PERIOD = 3.0
TYPING_IDLE_PERIOD = 2.0


class TypingIndicator:
    """Receiver side: shows the peer as typing until told otherwise or it goes quiet.

    The indicator clears itself ``quiet_period`` after the last
    ``isTyping=True`` signal, which covers a sender that disconnects before
    sending ``isTyping=False``.
    """

    def __init__(
        self,
        peer_id: str,
        *,
        quiet_period: float = TYPING_QUIET_PERIOD,
        scheduler: Scheduler | None = None,
        on_change: Callable[[bool], Any] | None = None,
    ) -> None:
        self.peer_id = peer_id
        self.quiet_period = quiet_period
        self._scheduler = scheduler or LoopScheduler()
        self._on_change = on_change
        self._typing = False
        self._timer: TimerHandle | None = None

    @property
    def is_typing(self) -> bool:
        return self._typing

    def handle(self, sender_id: str, is_typing: bool) -> None:
        if sender_id != self.peer_id:
            return
        self._cancel()
        if is_typing:
            self._timer = self._scheduler.call_later(self.quiet_period, self._expire)
        self._set(is_typing)

    def reset(self) -> None:
        self._cancel()
        self._set(False)

    def _expire(self) -> None:
        self._timer = None
        self._set(False)

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set(self, value: bool) -> None:
        if value == self._typing:
            return
        self._typing = value
        if self._on_change is not None:
            self._on_change(value)


class TypingDebouncer:
    """Sender side: one ``True`` per burst of input, ``False`` after inactivity."""

    def __init__(
        self,
        emit: Callable[[bool], Any],
        *,
        idle_period: float = TYPING_IDLE_PERIOD,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._emit = emit
        self.idle_period = idle_period
        self._scheduler = scheduler or LoopScheduler()
        self._active = False
        self._timer: TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._active

    def keystroke(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        if not self._active:
            self._active = True
            self._emit(True)
        self._timer = self._scheduler.call_later(self.idle_period, self._idle)

    def stop(self) -> None:
        """End the burst now, e.g. when the message is sent."""

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._active:
            self._active = False
            self._emit(False)

    def _idle(self) -> None:
        self._timer = None
        if self._active:
            self._active = False
            self._emit(False)
