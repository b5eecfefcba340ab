"""
Timer and Task Scheduling

Debounced work in the bridge (reconnect, rollup window, heartbeat) is
expressed as an optional pending handle returned by `call_later`.
Fire-and-forget coroutines (flushes, reconnects) go through `spawn` so
their tasks stay referenced and failures get logged.

Two implementations share the same surface:
- LoopTimers: real asyncio event loop, wall clock
- ManualTimers: virtual clock advanced explicitly (replay and tests)
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Set


class _TaskTracker:
    """Keeps spawned tasks alive and logs their failures."""

    def __init__(self, logger: logging.Logger):
        self._tasks: Set[asyncio.Task] = set()
        self._logger = logger

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(f"Background task failed: {exc!r}")

    async def settle(self):
        """Wait until every spawned task (including ones spawned meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self):
        for task in list(self._tasks):
            task.cancel()


class LoopTimers:
    """Timers backed by the running asyncio loop."""

    def __init__(self, logger: logging.Logger = None):
        self._tracker = _TaskTracker(logger or logging.getLogger(__name__))

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        return self._tracker.spawn(coro)

    async def settle(self):
        await self._tracker.settle()

    def cancel_all(self):
        self._tracker.cancel_all()


class ManualHandle:
    """Handle returned by ManualTimers.call_later."""

    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled

    def _run(self):
        self._callback(*self._args)


class ManualTimers:
    """
    Virtual-clock timers.

    Callbacks only run inside advance(). Spawned coroutines still run on
    the real event loop; await settle() to let them finish.

    Usage:
        timers = ManualTimers()
        timers.call_later(2.0, fire)
        timers.advance(1.9)   # nothing
        timers.advance(0.1)   # fire() runs at t=2.0
        await timers.settle()
    """

    def __init__(self, start: float = 0.0, logger: logging.Logger = None):
        self._now = start
        self._heap: List[tuple] = []
        self._counter = itertools.count()
        self._tracker = _TaskTracker(logger or logging.getLogger(__name__))

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable, *args) -> ManualHandle:
        handle = ManualHandle(self._now + delay, callback, args)
        heapq.heappush(self._heap, (handle.when, next(self._counter), handle))
        return handle

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        return self._tracker.spawn(coro)

    async def settle(self):
        await self._tracker.settle()

    def cancel_all(self):
        self._tracker.cancel_all()

    def advance(self, seconds: float):
        """Move the clock forward, running due callbacks in time order."""
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            if handle.cancelled():
                continue
            self._now = when
            handle._run()
        self._now = target

    @property
    def pending(self) -> int:
        """Number of scheduled, not-yet-fired, non-cancelled callbacks."""
        return sum(1 for _, _, h in self._heap if not h.cancelled())

    def next_deadline(self) -> Optional[float]:
        live = [when for when, _, h in self._heap if not h.cancelled()]
        return min(live) if live else None
