"""Schedulers driving the engine's timers.

The engine is single-threaded: every watchdog tick, evaluation pass and heal
step runs as a callback on one scheduler. Waits are expressed as "call me
again after N ms" instead of sleeping, so a heal in progress never blocks
other handles.

Two implementations:
- LoopScheduler: background thread draining a timer heap (production).
- ManualScheduler: fake clock advanced explicitly (tests, simulations).
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    __slots__ = ("when", "callback", "cancelled")

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class CancelToken:
    """Cooperative cancellation flag shared by a multi-step operation."""

    def __init__(self):
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled"):
        if self._reason is None:
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason


class Scheduler(Protocol):
    def now(self) -> float:
        """Monotonic time in milliseconds."""

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def call_every(self, interval_ms: float, callback: Callable[[], None]) -> TimerHandle:
        ...


def _run_callback(callback: Callable[[], None]):
    try:
        callback()
    except Exception:
        # The loop outlives any single callback
        logger.exception("Scheduled callback failed: %r", callback)


class _HeapScheduler:
    """Timer heap shared by both scheduler flavours."""

    def __init__(self):
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay_ms), callback)
        self._push(handle)
        return handle

    def call_soon(self, callback: Callable[[], None]) -> TimerHandle:
        return self.call_later(0, callback)

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> TimerHandle:
        """call_soon() for other threads. LoopScheduler locks the heap on push."""
        return self.call_later(0, callback)

    def call_every(self, interval_ms: float, callback: Callable[[], None]) -> TimerHandle:
        """Repeat callback every interval until the returned handle is cancelled."""
        outer = TimerHandle(self.now() + interval_ms, callback)

        def tick():
            if outer.cancelled:
                return
            _run_callback(callback)
            if not outer.cancelled:
                outer.when = self.now() + interval_ms
                inner = TimerHandle(outer.when, tick)
                self._push(inner)

        self._push(TimerHandle(outer.when, tick))
        return outer

    def _push(self, handle: TimerHandle):
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))

    def _pop_due(self, now: float) -> TimerHandle | None:
        while self._heap and self._heap[0][0] <= now:
            _, _, handle = heapq.heappop(self._heap)
            if not handle.cancelled:
                return handle
        return None

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)


class ManualScheduler(_HeapScheduler):
    """Deterministic scheduler whose clock only moves when told to.

    Usage:
        scheduler = ManualScheduler()
        scheduler.call_later(500, fn)
        scheduler.advance(500)   # fn runs here
    """

    def __init__(self, start_ms: float = 100_000.0):
        super().__init__()
        self._now = start_ms

    def now(self) -> float:
        return self._now

    def advance(self, ms: float):
        """Move the clock forward, running every timer that falls due in order."""
        target = self._now + ms
        while self._heap and self._heap[0][0] <= target:
            when = self._heap[0][0]
            self._now = max(self._now, when)
            handle = self._pop_due(self._now)
            if handle is not None:
                _run_callback(handle.callback)
        self._now = target

    def run_pending(self):
        """Run callbacks already due without moving the clock."""
        self.advance(0)


class LoopScheduler(_HeapScheduler):
    """Background-thread scheduler over time.monotonic().

    Callbacks always run on the loop thread. Other threads (HTTP handlers,
    mpv readers) hand work over with call_soon_threadsafe().
    """

    def __init__(self):
        super().__init__()
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._running = False

    def now(self) -> float:
        return time.monotonic() * 1000.0

    def _push(self, handle: TimerHandle):
        with self._cond:
            super()._push(handle)
            self._cond.notify()

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, daemon=True, name="streamheal-loop")
        self._thread.start()
        logger.info("Scheduler loop started")

    def stop(self):
        with self._cond:
            self._running = False
            self._cond.notify()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Scheduler loop stopped")

    @property
    def running(self) -> bool:
        return self._running

    def on_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def _loop(self):
        while True:
            with self._cond:
                if not self._running:
                    return
                now = self.now()
                handle = self._pop_due(now)
                if handle is None:
                    timeout = None
                    if self._heap:
                        timeout = max(0.0, (self._heap[0][0] - now) / 1000.0)
                    self._cond.wait(timeout)
                    continue
            _run_callback(handle.callback)
