"""
Rollup Buffer & Scheduler

The buffer holds admitted updates in admission order. A flush always
drains the entire buffer as one batch; a failed batch goes back on the
front, ahead of anything admitted while it was in flight.

The scheduler decides when to flush:
- window == 0: every admission requests a flush; a request made while
  another is still waiting to drain is folded into it
- window > 0: the first admission starts one timer; later admissions
  ride along until it fires
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional

from .types import Update


class RollupBuffer:
    """Ordered, unbounded update buffer."""

    def __init__(self):
        self._updates: Deque[Update] = deque()

    def __len__(self) -> int:
        return len(self._updates)

    def is_empty(self) -> bool:
        return not self._updates

    def append(self, update: Update):
        self._updates.append(update)

    def drain(self) -> List[Update]:
        """Take the entire current contents as one batch."""
        batch = list(self._updates)
        self._updates.clear()
        return batch

    def requeue_front(self, batch: Iterable[Update]):
        """Put a failed batch back ahead of newer updates, order kept."""
        self._updates.extendleft(reversed(list(batch)))

    def snapshot(self) -> List[Update]:
        return list(self._updates)


class RollupScheduler:
    """
    Debounced flush scheduling.

    At most one window timer is pending at a time. The handle is cleared
    when the timer fires, before the flush starts.

    In immediate mode at most one flush waits behind the one in flight;
    admissions made before it drains ride along with it.
    """

    def __init__(
        self,
        flush: Callable[[], Awaitable[Any]],
        timers,
        window: float = 0.0,
        logger: logging.Logger = None,
    ):
        """
        Initialize scheduler.

        Args:
            flush: Coroutine function draining the buffer and delivering it
            timers: LoopTimers / ManualTimers
            window: Rollup window in seconds (0 = immediate)
            logger: Optional logger
        """
        if window < 0:
            raise ValueError("window must be >= 0")
        self._flush = flush
        self._timers = timers
        self.window = window
        self._logger = logger or logging.getLogger(__name__)
        self._pending = None
        self._requested = False
        self._flush_lock = asyncio.Lock()
        self._closed = False

    @property
    def immediate(self) -> bool:
        return self.window <= 0

    @property
    def pending(self) -> bool:
        return self._pending is not None

    @property
    def flush_requested(self) -> bool:
        return self._requested

    @property
    def closed(self) -> bool:
        return self._closed

    def on_admit(self):
        """Called after every admission."""
        if self._closed:
            return

        if self.immediate:
            if self._requested:
                return
            self._requested = True
            self._timers.spawn(self._flush_requested())
            return

        if self._pending is not None:
            return
        self._pending = self._timers.call_later(self.window, self._fire)
        self._logger.debug(f"Rollup window started ({self.window}s)")

    async def _flush_requested(self):
        async with self._flush_lock:
            # Cleared right before the drain: later admissions need a new flush
            self._requested = False
            await self._flush()

    def _fire(self):
        self._pending = None
        if not self._closed:
            self._timers.spawn(self._flush())

    def close(self):
        """Stop scheduling flushes and drop a pending window timer (shutdown path)."""
        self._closed = True
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
