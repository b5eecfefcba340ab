"""
Connection Supervisor

Owns the push-subscription socket: exactly one live connection, an
Origin header on the handshake (the upstream gateway rejects handshakes
without one), and a debounced reconnect after any close.

State machine:
    DISCONNECTED -> CONNECTING -> OPEN -> CLOSING -> DISCONNECTED
    OPEN -> DISCONNECTED on close (or error followed by close)
    DISCONNECTED -> CONNECTING after the reconnect delay

Every inbound frame is parsed as one JSON document and handed to
`on_frame`; frames that fail to parse are logged and dropped.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Sequence

import websockets
from websockets.exceptions import ConnectionClosed

from .types import BridgeStats, ConnectionState


DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_HEARTBEAT_INTERVAL = 60.0

Connector = Callable[[str, Optional[str]], Awaitable[Any]]


async def open_websocket(url: str, origin: Optional[str] = None) -> Any:
    """Open a websocket with the Origin header set on the handshake."""
    return await websockets.connect(
        url,
        origin=origin,
        ping_interval=30,
        ping_timeout=60,
        close_timeout=10,
    )


class ConnectionSupervisor:
    """
    Push socket lifecycle, reconnect debounce and liveness heartbeat.

    Only one reconnect timer may be pending at a time. An error event is
    logged but does not tear the connection down; the close that follows
    schedules the reconnect.
    """

    def __init__(
        self,
        url: str,
        on_frame: Callable[[Any], None],
        timers,
        origin: Optional[str] = None,
        connector: Connector = open_websocket,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        depth: Callable[[], int] = lambda: 0,
        subscriptions: Sequence[dict] = (),
        stats: Optional[BridgeStats] = None,
        logger: logging.Logger = None,
    ):
        """
        Initialize supervisor.

        Args:
            url: Push feed URL
            on_frame: Receives every successfully parsed frame
            timers: LoopTimers / ManualTimers
            origin: Origin header value
            connector: Opens a connection (url, origin) -> websocket
            reconnect_delay: Fixed delay before reconnecting (seconds)
            heartbeat_interval: Liveness log interval (seconds)
            depth: Reports current buffer depth for the heartbeat
            subscriptions: Requests sent on every successful open
            stats: Shared stats
            logger: Optional logger
        """
        self._url = url
        self._origin = origin
        self._on_frame = on_frame
        self._timers = timers
        self._connector = connector
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self._depth = depth
        self._subscriptions = list(subscriptions)
        self._stats = stats or BridgeStats()
        self._logger = logger or logging.getLogger(__name__)

        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_handle = None
        self._heartbeat_handle = None
        self._connect_lock = asyncio.Lock()
        self._stopped = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_handle is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Open the connection and keep it open until stop()."""
        self._stopped = False
        await self.connect()

    async def connect(self):
        """Tear down any existing connection, then open a new one."""
        async with self._connect_lock:
            if self._stopped:
                return
            self._cancel_reconnect()
            await self._teardown()

            self._state = ConnectionState.CONNECTING
            self._logger.info(f"Connecting WS: {self._url} (Origin={self._origin})")

            try:
                ws = await self._connector(self._url, self._origin)
                for request in self._subscriptions:
                    await ws.send(json.dumps(request))
            except asyncio.CancelledError:
                self._state = ConnectionState.DISCONNECTED
                raise
            except Exception as e:
                self._handle_error(e)
                self._handle_close(f"connect failed: {e}")
                return

            # stop() ran while the handshake was in flight
            if self._stopped:
                await self._close_socket(ws)
                self._state = ConnectionState.DISCONNECTED
                self._logger.info("WS opened after stop, closed")
                return

            self._ws = ws
            self._handle_open()
            self._reader = asyncio.ensure_future(self._read_loop(ws))

    async def stop(self):
        """Close the connection without scheduling a reconnect."""
        self._stopped = True
        self._cancel_reconnect()
        async with self._connect_lock:
            await self._teardown()

    async def _teardown(self):
        """Best-effort close of the current connection."""
        self._cancel_heartbeat()
        ws, reader = self._ws, self._reader
        self._ws = None
        self._reader = None
        if ws is None and reader is None:
            return

        self._state = ConnectionState.CLOSING
        if reader is not None and not reader.done():
            reader.cancel()
        if ws is not None:
            await self._close_socket(ws)
        self._state = ConnectionState.DISCONNECTED

    async def _close_socket(self, ws):
        """Close a socket. Errors are swallowed."""
        try:
            await ws.close()
        except Exception as e:
            self._logger.debug(f"Ignored error closing WS: {e}")

    async def _read_loop(self, ws):
        reason = "closed by peer"
        try:
            async for frame in ws:
                self.handle_message(frame)
        except ConnectionClosed as e:
            reason = str(e)
        except Exception as e:
            self._handle_error(e)
            reason = f"error: {e}"
            await self._close_socket(ws)

        # A replaced connection must not trigger a reconnect
        if ws is self._ws:
            self._ws = None
            self._reader = None
            self._handle_close(reason)

    # =========================================================================
    # Events
    # =========================================================================

    def handle_message(self, frame: Any):
        """Parse one frame as a JSON document and forward it."""
        self._stats.frames_received += 1
        try:
            text = frame.decode('utf-8') if isinstance(frame, (bytes, bytearray)) else frame
            payload = json.loads(text, parse_float=Decimal)
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            self._stats.parse_errors += 1
            self._logger.error(f"WS message parse error: {e}")
            return
        self._on_frame(payload)

    def _handle_open(self):
        self._state = ConnectionState.OPEN
        self._logger.info("WS connected")
        self._start_heartbeat()

    def _handle_error(self, error: Exception):
        self._logger.error(f"WS error: {error}")

    def _handle_close(self, reason: str):
        self._state = ConnectionState.DISCONNECTED
        self._cancel_heartbeat()
        self._logger.warning(f"WS closed: {reason}")
        if not self._stopped:
            self._schedule_reconnect()

    # =========================================================================
    # Debounced timers
    # =========================================================================

    def _schedule_reconnect(self):
        if self._reconnect_handle is not None:
            return
        self._logger.info(f"Reconnecting in {self.reconnect_delay}s")
        self._reconnect_handle = self._timers.call_later(
            self.reconnect_delay, self._fire_reconnect
        )

    def _fire_reconnect(self):
        self._reconnect_handle = None
        if self._stopped:
            return
        self._stats.reconnects += 1
        self._timers.spawn(self.connect())

    def _cancel_reconnect(self):
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _start_heartbeat(self):
        self._cancel_heartbeat()
        self._heartbeat_handle = self._timers.call_later(
            self.heartbeat_interval, self._beat
        )

    def _beat(self):
        self._logger.info(f"alive / buffer: {self._depth()}")
        self._heartbeat_handle = self._timers.call_later(
            self.heartbeat_interval, self._beat
        )

    def _cancel_heartbeat(self):
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None
