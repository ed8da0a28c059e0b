"""Timer facility shared by every node of a cluster.

All durations are milliseconds. Two implementations share the ``Clock``
protocol:

- ``VirtualClock`` is a discrete-event simulation. Nothing happens until the
  driver advances time, which makes runs fully deterministic for a given seed.
- ``AsyncioClock`` schedules callbacks on the running asyncio loop and is what
  the HTTP service uses.

In both cases callbacks run one at a time on a single thread, so a node never
handles two messages or timers concurrently.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Clock(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


class VirtualTimer:
    __slots__ = ("when", "_callback", "_args", "_cancelled")

    def __init__(self, when: float, callback: Callable[..., Any], args: tuple):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._callback = None
        self._args = ()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _run(self) -> None:
        callback, args = self._callback, self._args
        # a fired timer counts as spent, cancelling it later is a no-op
        self.cancel()
        callback(*args)

    def __repr__(self) -> str:
        return f"VirtualTimer(when={self.when}, cancelled={self._cancelled})"


class VirtualClock:
    def __init__(self, start: float = 0.0):
        self._now = start
        # a heap of (time, insertion order, timer): equal times fire in FIFO order
        self._agenda: list[tuple[float, int, VirtualTimer]] = []
        self._order = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> VirtualTimer:
        if delay < 0:
            raise ValueError("delay should not be negative")
        timer = VirtualTimer(self._now + delay, callback, args)
        heapq.heappush(self._agenda, (timer.when, next(self._order), timer))
        return timer

    def pending(self) -> int:
        return sum(1 for _, _, timer in self._agenda if not timer.cancelled)

    def next_deadline(self) -> float | None:
        self._discard_cancelled()
        return self._agenda[0][0] if self._agenda else None

    def step(self) -> bool:
        """Fire the earliest pending timer. Returns False when nothing is left."""
        self._discard_cancelled()
        if not self._agenda:
            return False
        when, _, timer = heapq.heappop(self._agenda)
        self._now = when
        timer._run()
        return True

    def run_until(self, t: float) -> None:
        while True:
            deadline = self.next_deadline()
            if deadline is None or deadline > t:
                break
            self.step()
        self._now = max(self._now, t)

    def advance(self, delay: float) -> None:
        self.run_until(self._now + delay)

    def run(self, max_events: int | None = None) -> int:
        fired = 0
        while max_events is None or fired < max_events:
            if not self.step():
                break
            fired += 1
        return fired

    def _discard_cancelled(self) -> None:
        while self._agenda and self._agenda[0][2].cancelled:
            heapq.heappop(self._agenda)

    def __repr__(self) -> str:
        return f"VirtualClock(now={self._now}, pending={self.pending()})"


class AsyncioTimer:
    __slots__ = ("_handle",)

    def __init__(self, handle: asyncio.TimerHandle):
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._handle.cancelled()


class AsyncioClock:
    """Wall-clock timers on the running event loop (milliseconds in, seconds out)."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time() * 1000.0

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> AsyncioTimer:
        return AsyncioTimer(self.loop.call_later(delay / 1000.0, callback, *args))
