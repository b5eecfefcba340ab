"""
Webhook Delivery

Signs and POSTs one batch of updates to the downstream receiver.

Wire format:
    POST <url>
    content-type: application/json
    x-signature: sha256=<hex HMAC-SHA256 of the exact body bytes>  (if secret set)
    {"ts": <unix seconds>, "updates": [Update...]}

A batch that is not acknowledged with 2xx goes back on the front of the
rollup buffer. No retry timer is started here; the next scheduled flush
carries it.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Callable, Dict, List, Mapping, Optional, Protocol

import aiohttp

from .rollup import RollupBuffer
from .types import BridgeStats, Update


SIGNATURE_HEADER = 'x-signature'
DEFAULT_TIMEOUT = 10.0


class HttpSender(Protocol):
    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> int: ...


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of `body` keyed by `secret`."""
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def build_payload(batch: List[Update], ts: int) -> bytes:
    """Serialize a batch once; these bytes are both signed and posted."""
    return json.dumps(
        {'ts': ts, 'updates': [u.to_dict() for u in batch]},
        separators=(',', ':'),
    ).encode('utf-8')


class AiohttpSender:
    """HTTP sender on a shared aiohttp session with a bounded timeout."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        return self._session

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> int:
        session = await self._get_session()
        async with session.post(url, data=body, headers=dict(headers)) as response:
            await response.read()
            return response.status

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


class WebhookDelivery:
    """
    Drains the rollup buffer and hands the batch to the receiver.

    Flushes are serialized: the drain happens only after the previous
    flush finished, so a failed batch is back in the buffer before the
    next drain and admission order is kept end to end.
    """

    def __init__(
        self,
        buffer: RollupBuffer,
        url: str,
        secret: Optional[str] = None,
        sender: Optional[HttpSender] = None,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
        stats: Optional[BridgeStats] = None,
        logger: logging.Logger = None,
    ):
        """
        Initialize delivery.

        Args:
            buffer: Rollup buffer to drain
            url: Webhook receiver URL
            secret: Shared HMAC secret (None = unsigned)
            sender: HTTP sender (defaults to AiohttpSender)
            timeout: POST timeout in seconds for the default sender
            clock: Source of the payload timestamp
            stats: Shared stats
            logger: Optional logger
        """
        self._buffer = buffer
        self.url = url
        self._secret = secret or None
        self._sender = sender or AiohttpSender(timeout=timeout)
        self._clock = clock
        self._stats = stats or BridgeStats()
        self._logger = logger or logging.getLogger(__name__)
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def build_headers(self, body: bytes) -> Dict[str, str]:
        headers = {'content-type': 'application/json'}
        if self._secret:
            headers[SIGNATURE_HEADER] = f"sha256={sign_payload(self._secret, body)}"
        return headers

    async def flush(self) -> bool:
        """
        Deliver everything currently buffered as one batch.

        Returns:
            True if delivered or nothing to deliver, False if re-queued
        """
        async with self._lock:
            if self._buffer.is_empty():
                return True

            batch = self._buffer.drain()
            delivered = False
            try:
                delivered = await self.deliver(batch)
            finally:
                # Also covers cancellation while the POST is in flight
                if not delivered:
                    self._buffer.requeue_front(batch)
                    self._stats.updates_requeued += len(batch)
            return delivered

    async def deliver(self, batch: List[Update]) -> bool:
        """POST one batch. Never raises on delivery failure."""
        try:
            body = build_payload(batch, int(self._clock()))
        except (TypeError, ValueError) as e:
            self._record_failure(f"Cannot serialize batch: {e!r} ({len(batch)} re-queued)")
            return False
        headers = self.build_headers(body)

        try:
            status = await self._sender.post(self.url, body, headers)
        except asyncio.TimeoutError:
            self._record_failure(f"POST {self.url} failed: timeout ({len(batch)} re-queued)")
            return False
        except (aiohttp.ClientError, OSError) as e:
            self._record_failure(f"POST {self.url} failed: {e!r} ({len(batch)} re-queued)")
            return False

        if 200 <= status < 300:
            self._stats.deliveries_ok += 1
            self._stats.updates_delivered += len(batch)
            self._logger.info(f"POST {self.url} OK ({len(batch)})")
            return True

        self._stats.deliveries_failed += 1
        self._logger.warning(f"POST {self.url} status={status} ({len(batch)} re-queued)")
        return False

    def _record_failure(self, message: str):
        self._stats.deliveries_failed += 1
        self._logger.error(message)

    async def close(self):
        close = getattr(self._sender, 'close', None)
        if close is not None:
            await close()
