"""
Event Source

The range-query side of the upstream: current chain position plus
event logs for a position range. JsonRpcEventSource speaks plain
Ethereum JSON-RPC over aiohttp (eth_blockNumber / eth_getLogs).

Endpoints used:
- eth_blockNumber - current position
- eth_getLogs - logs for [fromBlock, toBlock] filtered by address + topic0
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from .normalizer import EventKind, to_int


class RpcError(RuntimeError):
    """JSON-RPC error object or unusable response."""


class EventSource(Protocol):
    async def get_current_position(self) -> int: ...

    async def get_events(
        self, from_position: int, to_position: int, kind: EventKind
    ) -> List[Dict[str, Any]]: ...


def log_subscription_request(
    addresses: Sequence[str],
    kinds: Sequence[EventKind],
    request_id: int = 1,
) -> Dict[str, Any]:
    """eth_subscribe('logs') request for the tracked contracts and kinds."""
    log_filter: Dict[str, Any] = {'topics': [[k.topic0 for k in kinds]]}
    if addresses:
        log_filter['address'] = list(addresses)
    return {
        'jsonrpc': '2.0',
        'id': request_id,
        'method': 'eth_subscribe',
        'params': ['logs', log_filter],
    }


class JsonRpcEventSource:
    """
    Ethereum JSON-RPC range-query client.

    Usage:
        source = JsonRpcEventSource(http_url, addresses=[...])
        latest = await source.get_current_position()
        logs = await source.get_events(latest - 10, latest, kind)
        await source.close()
    """

    def __init__(
        self,
        http_url: str,
        addresses: Sequence[str] = (),
        request_timeout: float = 10.0,
        logger: logging.Logger = None,
    ):
        self._url = http_url
        self._addresses = [a.lower() for a in addresses]
        self._request_timeout = request_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._request_timeout)
            )
        return self._session

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _call(self, method: str, params: List[Any]) -> Any:
        session = await self._get_session()
        self._request_id += 1
        request = {
            'jsonrpc': '2.0',
            'id': self._request_id,
            'method': method,
            'params': params,
        }

        async with session.post(self._url, json=request) as response:
            if response.status != 200:
                raise RpcError(f"{method}: HTTP {response.status}")
            data = await response.json(content_type=None)

        if not isinstance(data, dict):
            raise RpcError(f"{method}: malformed response")
        if data.get('error') is not None:
            raise RpcError(f"{method}: {data['error']}")
        return data.get('result')

    async def get_current_position(self) -> int:
        result = await self._call('eth_blockNumber', [])
        block = to_int(result)
        if block is None:
            raise RpcError(f"eth_blockNumber: unexpected result {result!r}")
        return block

    async def get_events(
        self, from_position: int, to_position: int, kind: EventKind
    ) -> List[Dict[str, Any]]:
        log_filter: Dict[str, Any] = {
            'fromBlock': hex(from_position),
            'toBlock': hex(to_position),
            'topics': [kind.topic0],
        }
        if self._addresses:
            log_filter['address'] = self._addresses

        result = await self._call('eth_getLogs', [log_filter])
        if not isinstance(result, list):
            raise RpcError(f"eth_getLogs: unexpected result {type(result).__name__}")

        self._logger.debug(
            f"eth_getLogs {kind.name} [{from_position}..{to_position}]: {len(result)} logs"
        )
        return result
