"""
Timer primitives shared by every monitor.

Two schedulers implement the same small protocol:
- ThreadScheduler: real wall clock, daemon threads (production)
- ManualScheduler: virtual clock advanced explicitly (tests, drills)

Cancel semantics: once `TimerHandle.cancel()` returns no new invocation starts.
An invocation that already started may still complete, so callbacks re-check
their owner's state before acting.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Protocol, Tuple

log = logging.getLogger(__name__)

Callback = Callable[[], None]


class TimerHandle:
    def __init__(self, name: str = "timer") -> None:
        self.name = name
        self._cancelled = False
        self._lock = threading.Lock()
        self._on_cancel: Optional[Callable[[], None]] = None

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            hook = self._on_cancel
        if hook is not None:
            hook()

    def _run(self, fn: Callback) -> None:
        if self.cancelled:
            return
        try:
            fn()
        except Exception:
            log.exception("timer %s callback failed", self.name)


class Scheduler(Protocol):
    def now(self) -> float:
        ...

    def call_later(self, delay_s: float, fn: Callback, *, name: str = "timer") -> TimerHandle:
        ...

    def call_every(self, interval_s: float, fn: Callback, *, name: str = "periodic") -> TimerHandle:
        ...


class ThreadScheduler:
    def now(self) -> float:
        return time.time()

    def call_later(self, delay_s: float, fn: Callback, *, name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name)
        t = threading.Timer(max(0.0, float(delay_s)), handle._run, args=(fn,))
        t.name = f"kioskguard_{name}"
        t.daemon = True
        handle._on_cancel = t.cancel
        t.start()
        return handle

    def call_every(self, interval_s: float, fn: Callback, *, name: str = "periodic") -> TimerHandle:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        handle = TimerHandle(name)
        stop = threading.Event()
        handle._on_cancel = stop.set

        def _loop() -> None:
            while not stop.wait(interval_s):
                handle._run(fn)

        t = threading.Thread(target=_loop, name=f"kioskguard_{name}", daemon=True)
        t.start()
        return handle


# (due_us, seq, handle, fn, interval_us)
_Entry = Tuple[int, int, TimerHandle, Callback, Optional[int]]


def _us(seconds: float) -> int:
    return int(round(float(seconds) * 1_000_000))


class ManualScheduler:
    """
    Deterministic scheduler: nothing fires until `advance()` is called.
    Due callbacks run in due-time order; callbacks scheduled while advancing
    also run if they fall inside the advanced window.
    The clock counts whole microseconds so repeated small steps never drift.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now_us = _us(start)
        self._queue: List[_Entry] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now_us / 1_000_000

    def call_later(self, delay_s: float, fn: Callback, *, name: str = "timer") -> TimerHandle:
        handle = TimerHandle(name)
        heapq.heappush(self._queue, (self._now_us + max(0, _us(delay_s)), next(self._seq), handle, fn, None))
        return handle

    def call_every(self, interval_s: float, fn: Callback, *, name: str = "periodic") -> TimerHandle:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        handle = TimerHandle(name)
        interval = max(1, _us(interval_s))
        heapq.heappush(self._queue, (self._now_us + interval, next(self._seq), handle, fn, interval))
        return handle

    def advance(self, seconds: float) -> None:
        target = self._now_us + max(0, _us(seconds))
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, fn, interval = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now_us = max(self._now_us, due)
            if interval is not None:
                heapq.heappush(self._queue, (due + interval, next(self._seq), handle, fn, interval))
            handle._run(fn)
        self._now_us = target

    def run_pending(self) -> None:
        self.advance(0.0)

    @property
    def pending(self) -> int:
        return sum(1 for e in self._queue if not e[2].cancelled)


class PeriodicTask:
    """Start/stop/reschedule wrapper around `Scheduler.call_every`."""

    def __init__(self, scheduler: Scheduler, interval_s: float, fn: Callback, *, name: str = "periodic") -> None:
        self._scheduler = scheduler
        self._interval_s = float(interval_s)
        self._fn = fn
        self._name = name
        self._handle: Optional[TimerHandle] = None

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    def start(self) -> None:
        if self.running:
            return
        self._handle = self._scheduler.call_every(self._interval_s, self._fn, name=self._name)

    def stop(self) -> None:
        h = self._handle
        self._handle = None
        if h is not None:
            h.cancel()

    def reschedule(self, interval_s: float) -> None:
        self._interval_s = float(interval_s)
        if self.running:
            self.stop()
            self.start()
