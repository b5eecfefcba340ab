"""
Shared fakes for oracle bridge tests.

- FakeWebSocket / FakeConnector: scripted push socket
- FakeSender: records webhook POSTs, replies with scripted statuses
"""

import asyncio
from typing import List, Mapping, Optional

import pytest

from oracle_bridge import Update


_CLOSE = object()


class FakeWebSocket:
    """Async-iterable socket fed by the test."""

    def __init__(self):
        self.sent: List[str] = []
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str):
        self.sent.append(message)

    def feed(self, frame):
        self._frames.put_nowait(frame)

    def drop(self):
        """Simulate the peer closing the connection."""
        self._frames.put_nowait(_CLOSE)

    def break_with(self, error: BaseException):
        """Make the next read raise `error`."""
        self._frames.put_nowait(error)

    async def close(self):
        self.closed = True
        self._frames.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._frames.get()
        if frame is _CLOSE:
            raise StopAsyncIteration
        if isinstance(frame, BaseException):
            raise frame
        return frame


class FakeConnector:
    """
    Connector returning a fresh FakeWebSocket per call.

    The first `fail` calls raise. When `gate` is set, the handshake waits
    on it before returning.
    """

    def __init__(self, fail: int = 0, gate: Optional[asyncio.Event] = None):
        self.fail = fail
        self.gate = gate
        self.calls: List[tuple] = []
        self.sockets: List[FakeWebSocket] = []

    async def __call__(self, url: str, origin=None):
        self.calls.append((url, origin))
        if self.fail > 0:
            self.fail -= 1
            raise OSError("connection refused")
        if self.gate is not None:
            await self.gate.wait()
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> FakeWebSocket:
        return self.sockets[-1]


class FakeSender:
    """Webhook sender recording every request."""

    def __init__(self):
        self.statuses: List[int] = []
        self.errors: List[BaseException] = []
        self.requests: List[tuple] = []

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> int:
        self.requests.append((url, body, dict(headers)))
        if self.errors:
            raise self.errors.pop(0)
        return self.statuses.pop(0) if self.statuses else 200


async def spin(times: int = 10):
    """Let ready tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


def make_update(i: int, source_id: str = "feed") -> Update:
    return Update(
        source_id=source_id,
        symbol_or_round=f"R{i}",
        value=str(1_000_000 + i),
        observed_at=1_700_000_000 + i,
    )


@pytest.fixture
def fake_connector():
    return FakeConnector()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def spinner():
    return spin


@pytest.fixture
def update_factory():
    return make_update


@pytest.fixture
def connector_factory():
    return FakeConnector
