"""
Log Poller (backstop)

Re-derives the events the push socket should have delivered by querying
the chain in position ranges. Results go through the same channel as
push frames, so the shared seen-set collapses overlaps.

High-water mark:
- starts at current position minus a safety margin
- advances to `latest` only after every tracked kind was fetched for
  the range, so a failed query retries the whole range next iteration
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from .normalizer import EventKind, to_int
from .source import EventSource
from .types import BridgeStats


DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_SAFETY_MARGIN = 10


def _log_position(entry: Dict[str, Any]):
    block = to_int(entry.get('blockNumber'))
    index = to_int(entry.get('logIndex'))
    return (block if block is not None else -1, index if index is not None else -1)


class LogPoller:
    """
    Self-rescheduling range poller.

    Usage:
        poller = LogPoller(source, kinds, emit=engine.submit_poll)
        task = asyncio.create_task(poller.run())
        ...
        poller.stop()
    """

    def __init__(
        self,
        source: EventSource,
        kinds: Sequence[EventKind],
        emit: Callable[[Dict[str, Any]], None],
        interval: float = DEFAULT_POLL_INTERVAL,
        safety_margin: int = DEFAULT_SAFETY_MARGIN,
        stats: Optional[BridgeStats] = None,
        logger: logging.Logger = None,
    ):
        """
        Initialize poller.

        Args:
            source: Range-query event source
            kinds: Tracked event kinds (one query per kind per range)
            emit: Receives every raw log entry found
            interval: Delay between iterations (seconds)
            safety_margin: Positions replayed behind the head at startup
            stats: Shared stats
            logger: Optional logger
        """
        self._source = source
        self._kinds = list(kinds)
        self._emit = emit
        self.interval = interval
        self.safety_margin = safety_margin
        self._stats = stats or BridgeStats()
        self._logger = logger or logging.getLogger(__name__)

        self._high_water_mark: Optional[int] = None
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def high_water_mark(self) -> Optional[int]:
        return self._high_water_mark

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> Optional[int]:
        """Set the high-water mark from the current position. Failure is logged; poll_once retries."""
        try:
            latest = await self._source.get_current_position()
        except Exception as e:
            self._handle_error(f"Poller init failed: {e}")
            return None
        self._high_water_mark = max(latest - self.safety_margin, 0)
        self._logger.info(f"Poller starting from position {self._high_water_mark} (head {latest})")
        return self._high_water_mark

    async def poll_once(self) -> int:
        """
        Run one iteration.

        Returns:
            Number of log entries emitted
        """
        latest = await self._source.get_current_position()
        self._stats.polls += 1

        if self._high_water_mark is None:
            self._high_water_mark = max(latest - self.safety_margin, 0)
        if latest <= self._high_water_mark:
            return 0

        from_position = self._high_water_mark + 1
        found: List[Dict[str, Any]] = []
        for kind in self._kinds:
            found.extend(await self._source.get_events(from_position, latest, kind))

        found.sort(key=_log_position)
        for entry in found:
            self._emit(entry)

        self._high_water_mark = latest
        if found:
            self._logger.debug(f"Poll [{from_position}..{latest}]: {len(found)} logs")
        return len(found)

    async def run(self):
        """Poll until stop() is called. Iterations never overlap."""
        self._running = True
        self._stop_event.clear()
        self._logger.info("Poll loop started")

        if self._high_water_mark is None:
            await self.initialize()

        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                self._handle_error(f"Poll error: {e}")

            # Wait for next poll
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        self._running = False
        self._logger.info("Poll loop stopped")

    def stop(self):
        self._stop_event.set()

    def _handle_error(self, message: str):
        self._stats.poll_errors += 1
        self._logger.error(message)
