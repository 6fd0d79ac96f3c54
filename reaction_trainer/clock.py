from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Monotonic clock abstraction.

    Core logic depends on this interface rather than calling real time directly.
    """

    def now(self) -> float:
        """Return monotonic seconds."""


class RealClock:
    """Production clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


@dataclass(frozen=True, slots=True)
class TimerHandle:
    timer_id: int
    due_at_s: float


class Scheduler(Protocol):
    """Cancellable one-shot timers."""

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def cancel(self, handle: TimerHandle) -> None:
        ...


class PollingScheduler:
    """One-shot timers fired from ``update()``.

    The host calls ``update()`` once per frame; tests call it after advancing a
    fake clock. Callbacks run synchronously, in due order, on the caller's thread.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[TimerHandle, Callable[[], None]]] = {}

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        if delay_s < 0.0:
            raise ValueError("delay_s must be >= 0")
        handle = TimerHandle(timer_id=next(self._ids), due_at_s=self._clock.now() + float(delay_s))
        self._pending[handle.timer_id] = (handle, callback)
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        self._pending.pop(handle.timer_id, None)

    def pending_count(self) -> int:
        return len(self._pending)

    def update(self) -> int:
        """Fire every timer that is due. Returns the number fired."""

        fired = 0
        while True:
            now = self._clock.now()
            due = [entry for entry in self._pending.values() if entry[0].due_at_s <= now]
            if not due:
                return fired
            handle, callback = min(due, key=lambda e: (e[0].due_at_s, e[0].timer_id))
            # Callbacks may schedule or cancel; drop ours first.
            del self._pending[handle.timer_id]
            logger.debug("timer %d fired at %.4f", handle.timer_id, now)
            callback()
            fired += 1
