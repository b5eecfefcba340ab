"""
Mock Event Source

In-memory chain for offline development and tests. Logs are built with
the same shape eth_getLogs returns: hex blockNumber/logIndex, topic0 and
ABI-encoded data.

Usage:
    source = MockEventSource(head=100)
    source.emit(kind, "0xfeed...", [1_000_000, "0x" + "11" * 20, 1700000000])
    logs = await source.get_events(90, 100, kind)
"""

from typing import Any, Dict, List, Optional, Sequence

from eth_abi import encode as abi_encode
from eth_utils import keccak

from .normalizer import EventKind, to_int
from .source import RpcError


def make_log(
    kind: EventKind,
    address: str,
    values: Sequence[Any],
    block_number: int,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Build one raw log entry for `kind` with ABI-encoded `values`."""
    data = abi_encode(list(kind.arg_types), list(values))
    if tx_hash is None:
        tx_hash = '0x' + keccak(text=f"{address}:{block_number}:{log_index}").hex()
    return {
        'address': address,
        'topics': [kind.topic0],
        'data': '0x' + data.hex(),
        'blockNumber': hex(block_number),
        'transactionHash': tx_hash,
        'logIndex': hex(log_index),
        'removed': False,
    }


class MockEventSource:
    """
    Range-query source backed by a list of logs.

    `fail_next` makes the next N calls raise RpcError, for exercising
    the poller's retry path.
    """

    def __init__(self, head: int = 0):
        self.head = head
        self.fail_next = 0
        self.calls: List[tuple] = []
        self._logs: List[Dict[str, Any]] = []
        self._next_index: Dict[int, int] = {}

    @property
    def logs(self) -> List[Dict[str, Any]]:
        return list(self._logs)

    def advance(self, blocks: int = 1) -> int:
        self.head += blocks
        return self.head

    def add_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        self._logs.append(entry)
        return entry

    def emit(
        self,
        kind: EventKind,
        address: str,
        values: Sequence[Any],
        block_number: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Add a log at `block_number` (default: head) with the next free log index."""
        block = self.head if block_number is None else block_number
        log_index = self._next_index.get(block, 0)
        self._next_index[block] = log_index + 1
        return self.add_log(make_log(kind, address, values, block, log_index))

    def _maybe_fail(self, method: str):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RpcError(f"{method}: injected failure")

    async def get_current_position(self) -> int:
        self.calls.append(('get_current_position',))
        self._maybe_fail('eth_blockNumber')
        return self.head

    async def get_events(
        self, from_position: int, to_position: int, kind: EventKind
    ) -> List[Dict[str, Any]]:
        self.calls.append(('get_events', from_position, to_position, kind.name))
        self._maybe_fail('eth_getLogs')
        return [
            dict(entry) for entry in self._logs
            if entry['topics'] and entry['topics'][0] == kind.topic0
            and from_position <= to_int(entry['blockNumber']) <= to_position
        ]

    async def close(self):
        pass
