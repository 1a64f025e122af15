"""Timer capability for the sync core.

The core never sleeps. Deferred and periodic work is handed to a
``Scheduler`` which returns a cancellable handle. ``AsyncioScheduler`` runs
on the event loop; ``ManualScheduler`` runs on virtual time and is what the
tests and the in-process demo drive.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

Task = Callable[[], None]
Clock = Callable[[], int]


def wall_clock_ms() -> int:
    """Milliseconds since the Unix epoch."""
    return int(time.time() * 1000)


class ManualClock:
    """Settable millisecond clock, callable like ``wall_clock_ms``."""

    def __init__(self, start: int = 0):
        self.value = int(start)

    def __call__(self) -> int:
        return self.value

    def advance(self, ms: int) -> int:
        self.value += ms
        return self.value

    def set(self, value: int) -> None:
        self.value = value


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None: ...

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...


class Scheduler(ABC):
    @abstractmethod
    def schedule_once(self, delay: float, task: Task) -> TimerHandle:
        """Run ``task`` once after ``delay`` ms."""

    @abstractmethod
    def schedule_repeating(self, interval: float, task: Task) -> TimerHandle:
        """Run ``task`` every ``interval`` ms, first run after one interval."""


class _AsyncioHandle(TimerHandle):
    def __init__(self) -> None:
        self._timer: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler(Scheduler):
    """Scheduler backed by ``loop.call_later``."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule_once(self, delay: float, task: Task) -> TimerHandle:
        handle = _AsyncioHandle()
        handle._timer = self.loop.call_later(max(delay, 0) / 1000.0, _guarded(task))
        return handle

    def schedule_repeating(self, interval: float, task: Task) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = _AsyncioHandle()
        guarded = _guarded(task)

        def tick() -> None:
            if handle.cancelled:
                return
            # Re-arm first so a failing task does not stop the timer
            handle._timer = self.loop.call_later(interval / 1000.0, tick)
            guarded()

        handle._timer = self.loop.call_later(interval / 1000.0, tick)
        return handle


def _guarded(task: Task) -> Task:
    def run() -> None:
        try:
            task()
        except Exception:
            logger.exception("scheduled_task_failed", task=getattr(task, "__qualname__", repr(task)))
    return run


class _ManualHandle(TimerHandle):
    def __init__(self, interval: Optional[float]):
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Virtual-time scheduler. Nothing runs until ``advance``/``run_pending``.

    Tasks due at the same instant run in the order they were scheduled.
    Exceptions raised by tasks propagate to the caller of ``advance``.
    """

    def __init__(self, start: float = 0):
        self.now: float = start
        self._queue: List[Tuple[float, int, _ManualHandle, Task]] = []
        self._seq = itertools.count()

    def schedule_once(self, delay: float, task: Task) -> TimerHandle:
        handle = _ManualHandle(None)
        self._push(self.now + max(delay, 0), handle, task)
        return handle

    def schedule_repeating(self, interval: float, task: Task) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = _ManualHandle(interval)
        self._push(self.now + interval, handle, task)
        return handle

    def _push(self, due: float, handle: _ManualHandle, task: Task) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), handle, task))

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    def run_pending(self) -> int:
        """Run everything due at the current instant, including follow-ups."""
        return self.advance(0)

    def advance(self, ms: float) -> int:
        """Move virtual time forward by ``ms``, running due tasks in order."""
        target = self.now + ms
        ran = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, task = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.now = max(self.now, due)
            if handle.interval is not None:
                self._push(self.now + handle.interval, handle, task)
            task()
            ran += 1
        self.now = target
        return ran
