"""
Bridge Engine

Owns every piece of shared state (buffer, seen-set, timers, stats) and
the single processing loop. Ingestion sources never touch that state
directly: they put IngestEvents on one queue, and the loop runs
normalize -> record_once -> on_admit for each.

    push socket --+
                  +--> queue --> normalizer --> dedup --> buffer --> delivery
    log poller  --+
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import BridgeConfig
from .dedup import DedupFilter, SeenSet
from .delivery import HttpSender, WebhookDelivery
from .normalizer import EventNormalizer
from .poller import LogPoller
from .rollup import RollupBuffer, RollupScheduler
from .source import EventSource, JsonRpcEventSource, log_subscription_request
from .supervisor import ConnectionSupervisor, Connector, open_websocket
from .timers import LoopTimers
from .types import BridgeStats, IngestEvent


class BridgeEngine:
    """
    One bridge instance: config plus injected source, sender, timers and clock.

    Usage:
        engine = BridgeEngine(config)
        await engine.start()
        ...
        await engine.stop()   # stops sources, then makes a final flush
    """

    def __init__(
        self,
        config: BridgeConfig,
        source: Optional[EventSource] = None,
        sender: Optional[HttpSender] = None,
        timers=None,
        clock: Callable[[], float] = time.time,
        connector: Connector = open_websocket,
        logger: logging.Logger = None,
    ):
        """
        Initialize engine.

        Args:
            config: Bridge configuration
            source: Range-query source for the poll backstop
                (default: JsonRpcEventSource if config.http_url is set)
            sender: Webhook HTTP sender (default: AiohttpSender)
            timers: LoopTimers / ManualTimers
            clock: Wall clock for timestamps
            connector: Opens the push websocket
            logger: Optional logger
        """
        self._config = config
        self._timers = timers or LoopTimers()
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

        self.stats = BridgeStats()
        kinds = config.event_kinds()

        self.buffer = RollupBuffer()
        self.seen = SeenSet(config.seen_set_cap)
        self.dedup = DedupFilter(self.buffer, self.seen, stats=self.stats)
        self.normalizer = EventNormalizer(
            kinds,
            feed_id=config.feed_id,
            chain=config.chain,
            oracles=config.oracles,
            clock=clock,
            stats=self.stats,
        )
        self.delivery = WebhookDelivery(
            self.buffer,
            config.webhook_url,
            secret=config.webhook_secret,
            sender=sender,
            timeout=config.webhook_timeout,
            clock=clock,
            stats=self.stats,
        )
        self.scheduler = RollupScheduler(
            self.delivery.flush, self._timers, window=config.rollup_window
        )

        subscriptions = []
        if config.ws_subscribe_logs:
            subscriptions.append(log_subscription_request(config.oracles, kinds))
        self.supervisor = ConnectionSupervisor(
            config.ws_url,
            on_frame=self.submit_push,
            timers=self._timers,
            origin=config.ws_origin,
            connector=connector,
            reconnect_delay=config.reconnect_delay,
            heartbeat_interval=config.heartbeat_interval,
            depth=lambda: len(self.buffer),
            subscriptions=subscriptions,
            stats=self.stats,
        )

        if source is None and config.http_url:
            source = JsonRpcEventSource(config.http_url, config.oracles)
        self.source = source
        self.poller: Optional[LogPoller] = None
        if source is not None:
            self.poller = LogPoller(
                source,
                kinds,
                emit=self.submit_poll,
                interval=config.poll_interval,
                safety_margin=config.poll_safety_margin,
                stats=self.stats,
            )

        self._queue: asyncio.Queue = asyncio.Queue()
        self._processor: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # =========================================================================
    # Ingestion channel
    # =========================================================================

    def submit(self, event: IngestEvent):
        """Enqueue a raw event for the processing loop."""
        self._queue.put_nowait(event)

    def submit_push(self, payload: Any):
        self.submit(IngestEvent('push', payload, self._clock()))

    def submit_poll(self, payload: Any):
        self.submit(IngestEvent('poll', payload, self._clock()))

    def process_event(self, event: IngestEvent) -> int:
        """
        Normalize one raw event and admit its updates.

        Returns:
            Number of updates appended to the buffer
        """
        admitted = 0
        for normalized in self.normalizer.normalize(event.payload):
            if self.dedup.record_once(normalized.key, normalized.update):
                admitted += 1
                self.scheduler.on_admit()
            else:
                self._logger.debug(f"Duplicate {normalized.key} via {event.origin} dropped")
        return admitted

    async def run(self):
        """Single consumer of the ingestion queue."""
        while True:
            event = await self._queue.get()
            try:
                self.process_event(event)
            except Exception as e:
                self._logger.error(f"Failed to process {event.origin} event: {e}")
            finally:
                self._queue.task_done()

    async def flush(self) -> bool:
        return await self.delivery.flush()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Start the processing loop, the push connection and the poller."""
        if self._running:
            self._logger.warning("Bridge already running")
            return

        self._running = True
        self.stats.started_at = self._clock()
        self._logger.info(
            f"Starting oracle bridge on {self._config.chain} - "
            f"window={self._config.rollup_window}s, "
            f"kinds={[k.name for k in self.normalizer.kinds]}, "
            f"poller={'on' if self.poller else 'off'}, "
            f"signed={'yes' if self._config.webhook_secret else 'no'}"
        )

        self._processor = asyncio.ensure_future(self.run())
        await self.supervisor.start()
        if self.poller is not None:
            self._poll_task = asyncio.ensure_future(self.poller.run())

    async def stop(self):
        """Stop sources, admit what is still queued, then make a final flush."""
        if not self._running:
            return
        self._running = False
        self._logger.info("Stopping oracle bridge")

        await self.supervisor.stop()
        if self.poller is not None:
            self.poller.stop()
        for task in (self._poll_task, self._processor):
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._poll_task = None
        self._processor = None

        # No new flushes or windows from here on; the final flush below covers them
        self.scheduler.close()
        while not self._queue.empty():
            self.process_event(self._queue.get_nowait())
            self._queue.task_done()

        # Let in-flight flushes finish; a cancelled one re-queues its batch
        try:
            await asyncio.wait_for(
                self._timers.settle(), timeout=self._config.webhook_timeout + 1
            )
        except asyncio.TimeoutError:
            self._timers.cancel_all()

        pending = len(self.buffer)
        if pending:
            delivered = await self.delivery.flush()
            if delivered:
                self._logger.info(f"Final flush delivered {pending} updates")
            else:
                self._logger.error(f"Final flush failed, {pending} updates not delivered")

        await self.delivery.close()
        close = getattr(self.source, 'close', None)
        if close is not None:
            await close()
        self._logger.info("Oracle bridge stopped")

    def get_status(self) -> Dict[str, Any]:
        """Get bridge status."""
        return {
            'running': self._running,
            'chain': self._config.chain,
            'connection': self.supervisor.state.value,
            'buffer_depth': len(self.buffer),
            'queue_depth': self._queue.qsize(),
            'seen_set_size': len(self.seen),
            'rollup_pending': self.scheduler.pending,
            'delivery_in_flight': self.delivery.in_flight,
            'high_water_mark': self.poller.high_water_mark if self.poller else None,
            'stats': self.stats.to_dict(),
        }
