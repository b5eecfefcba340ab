"""
Event Normalizer

Converts heterogeneous raw events into canonical Update records.
Handles:
- Push price frames ({"type": "prices", "data": [...]})
- Chain log entries from the poll backstop
- eth_subscription log notifications arriving over the push socket

Field extraction never throws: named form first, then positional,
then a default. A record with an unusable value is skipped on its own,
the rest of the frame still goes through.
"""

import logging
import math
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .types import BridgeStats, NormalizedEvent, Update


# Candidate argument names, in priority order
VALUE_FIELDS = ('priceE6', 'price', 'answer', 'current', 'value')
ROUND_FIELDS = ('roundId', 'round', 'ts', 'updatedAt', 'timestamp')
TIME_FIELDS = ('ts', 'updatedAt', 'timestamp')
SEQ_FIELDS = ('seq', 'sequence', 'id')

# Push price item: named keys, or [symbol, price, ts] positional
PRICE_FIELDS = ('priceE6', 'price_e6', 'price')

DEFAULT_EVENT_SIGNATURE = "PriceUpdated(uint256 priceE6,address updater,uint256 ts)"

# Timestamps outside 0..2**63-1 are treated as missing
MAX_TIMESTAMP = 2 ** 63 - 1

_SIGNATURE_RE = re.compile(r'\s*(?:event\s+)?(\w+)\s*\((.*)\)\s*;?\s*')


def _index_of(names: Sequence[str], candidates: Sequence[str]) -> Optional[int]:
    for candidate in candidates:
        if candidate in names:
            return names.index(candidate)
    return None


@dataclass(frozen=True)
class EventKind:
    """A tracked log event, parsed from a human-readable signature."""
    name: str
    arg_types: Tuple[str, ...]
    arg_names: Tuple[str, ...]

    @classmethod
    def parse(cls, signature: str) -> 'EventKind':
        """
        Parse 'PriceUpdated(uint256 priceE6,address updater,uint256 ts)'.

        Only non-indexed arguments are supported: they are all in the log's
        data section and decode positionally.
        """
        match = _SIGNATURE_RE.fullmatch(signature)
        if not match:
            raise ValueError(f"Invalid event signature: {signature!r}")
        name, body = match.groups()

        arg_types = []
        arg_names = []
        parts = [p.strip() for p in body.split(',') if p.strip()]
        for i, part in enumerate(parts):
            tokens = part.split()
            if 'indexed' in tokens:
                raise ValueError(f"Indexed argument not supported in {signature!r}")
            arg_types.append(tokens[0])
            arg_names.append(tokens[1] if len(tokens) > 1 else f"arg{i}")

        return cls(name=name, arg_types=tuple(arg_types), arg_names=tuple(arg_names))

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(self.arg_types)})"

    @property
    def topic0(self) -> str:
        return '0x' + keccak(text=self.canonical).hex()

    @property
    def value_index(self) -> int:
        index = _index_of(self.arg_names, VALUE_FIELDS)
        return 0 if index is None else index

    @property
    def round_index(self) -> int:
        index = _index_of(self.arg_names, ROUND_FIELDS)
        return len(self.arg_names) - 1 if index is None else index

    @property
    def time_index(self) -> Optional[int]:
        return _index_of(self.arg_names, TIME_FIELDS)

    def decode_data(self, data: Any) -> Optional[List[Any]]:
        """ABI-decode a log's hex data section into a positional list."""
        if not isinstance(data, str):
            return None
        try:
            raw = bytes.fromhex(data[2:] if data.startswith('0x') else data)
            return list(abi_decode(list(self.arg_types), raw))
        except (ValueError, DecodingError):
            return None


# ============ Field helpers ============

def extract_field(
    container: Any,
    names: Sequence[str],
    index: Optional[int] = None,
    default: Any = None,
) -> Any:
    """Get a field by name, else by position, else default. Never raises."""
    if isinstance(container, Mapping):
        for name in names:
            value = container.get(name)
            if value is not None:
                return value
    elif isinstance(container, (list, tuple)):
        if index is not None and 0 <= index < len(container):
            if container[index] is not None:
                return container[index]
    return default


def to_int(raw: Any) -> Optional[int]:
    """Parse ints delivered as int, decimal string or 0x-hex string."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            if text.lower().startswith('0x'):
                return int(text, 16)
            return int(text)
        except ValueError:
            return None
    return None


def to_value_string(raw: Any) -> Optional[str]:
    """
    Render a numeric field as a decimal string, exactly as received.

    Returns None for missing, non-numeric or non-finite input.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, float):
        return repr(raw) if math.isfinite(raw) else None
    if isinstance(raw, Decimal):
        return str(raw) if raw.is_finite() else None
    if isinstance(raw, str):
        text = raw.strip()
        if text.lower().startswith('0x'):
            parsed = to_int(text)
            if parsed is None:
                return None
            try:
                return str(parsed)
            except ValueError:
                # Past the interpreter's int-to-str digit limit
                return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
        return text if number.is_finite() else None
    return None


def to_seconds(raw: Any) -> Optional[int]:
    """
    Parse a Unix timestamp field into whole seconds.

    Fractions are truncated. Anything negative or past MAX_TIMESTAMP is
    rejected so the caller falls back to the clock.
    """
    parsed = to_int(raw)
    if parsed is None:
        number = _to_decimal(raw)
        if number is None or not 0 <= number <= MAX_TIMESTAMP:
            return None
        parsed = int(number)
    return parsed if 0 <= parsed <= MAX_TIMESTAMP else None


def _to_decimal(raw: Any) -> Optional[Decimal]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, float):
        return Decimal(raw) if math.isfinite(raw) else None
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, str):
        try:
            number = Decimal(raw.strip())
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def log_dedup_key(entry: Mapping) -> Optional[str]:
    """DedupKey for a chain log: '<tx hash>:<log index>'."""
    tx_hash = entry.get('transactionHash')
    log_index = to_int(entry.get('logIndex'))
    if not isinstance(tx_hash, str) or not tx_hash or log_index is None:
        return None
    return f"{tx_hash.lower()}:{log_index}"


# ============ Normalizer ============

class EventNormalizer:
    """
    Normalizes raw frames and log entries to Updates.

    Responsibilities:
    - Recognize the payload shape
    - Derive the DedupKey from the event's identity, never its contents
    - Keep values as strings
    - Skip bad records individually
    - Drop frames addressed to another chain or oracle
    """

    def __init__(
        self,
        kinds: Sequence[EventKind] = (),
        feed_id: str = 'ws',
        chain: Optional[str] = None,
        oracles: Sequence[str] = (),
        clock: Callable[[], float] = time.time,
        stats: Optional[BridgeStats] = None,
        logger: logging.Logger = None,
    ):
        self._kinds_by_topic = {k.topic0: k for k in kinds}
        self._kinds_by_name = {k.name: k for k in kinds}
        self._feed_id = feed_id
        self._chain = chain.lower() if chain else None
        self._oracles = {a.lower() for a in oracles}
        self._clock = clock
        self._stats = stats or BridgeStats()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def kinds(self) -> List[EventKind]:
        return list(self._kinds_by_topic.values())

    def normalize(self, payload: Any) -> List[NormalizedEvent]:
        """Route a decoded payload to the matching shape handler."""
        if not isinstance(payload, Mapping):
            self._skip("payload is not an object")
            return []

        if not self.accepts(payload):
            return []

        if payload.get('type') == 'prices':
            return self.normalize_price_frame(payload)

        if payload.get('method') == 'eth_subscription':
            params = payload.get('params')
            result = params.get('result') if isinstance(params, Mapping) else None
            if isinstance(result, Mapping):
                event = self.normalize_log(result)
                return [event] if event else []
            self._skip("subscription notification without a log")
            return []

        if 'topics' in payload or 'transactionHash' in payload:
            event = self.normalize_log(payload)
            return [event] if event else []

        # Subscription acks, pings and other control frames
        self._logger.debug(f"Ignoring frame: {str(payload)[:100]}")
        return []

    def accepts(self, payload: Mapping) -> bool:
        """Drop frames tagged with another chain or an untracked oracle."""
        chain = payload.get('chain')
        if self._chain and isinstance(chain, str) and chain and chain.lower() != self._chain:
            self._filter(f"chain {chain}")
            return False

        oracle = payload.get('oracle')
        if self._oracles and isinstance(oracle, str) and oracle and oracle.lower() not in self._oracles:
            self._filter(f"oracle {oracle}")
            return False
        return True

    def normalize_price_frame(self, frame: Mapping) -> List[NormalizedEvent]:
        data = frame.get('data')
        if not isinstance(data, list):
            self._skip("prices frame without a data list")
            return []

        source_id = str(frame.get('source') or self._feed_id)
        frame_seq = extract_field(frame, SEQ_FIELDS)

        events = []
        for i, item in enumerate(data):
            if not isinstance(item, (Mapping, list, tuple)):
                self._skip(f"price item {i} is not an object")
                continue

            symbol = extract_field(item, ('symbol',), 0)
            value = to_value_string(extract_field(item, PRICE_FIELDS, 1))
            if symbol is None or value is None:
                self._skip(f"price item {i} has no usable symbol/price")
                continue

            observed_at = to_seconds(extract_field(item, ('ts',), 2))
            if observed_at is None:
                observed_at = int(self._clock())

            seq = extract_field(item, SEQ_FIELDS) if isinstance(item, Mapping) else None
            if seq is not None:
                key = f"{source_id}:{seq}"
            elif frame_seq is not None:
                key = f"{source_id}:{frame_seq}:{i}"
            else:
                key = None

            events.append(NormalizedEvent(
                key=key,
                update=Update(
                    source_id=source_id,
                    symbol_or_round=str(symbol),
                    value=value,
                    observed_at=observed_at,
                ),
            ))
        return events

    def normalize_log(self, entry: Mapping) -> Optional[NormalizedEvent]:
        if entry.get('removed'):
            self._skip("log removed by re-org")
            return None

        kind = self._match_kind(entry)
        if kind is None:
            self._skip("log does not match a tracked event kind")
            return None

        args = entry.get('args')
        if not isinstance(args, (Mapping, list, tuple)):
            args = kind.decode_data(entry.get('data'))
        if args is None:
            self._skip(f"{kind.name} log data could not be decoded")
            return None

        value = to_value_string(extract_field(args, VALUE_FIELDS, kind.value_index))
        if value is None:
            self._skip(f"{kind.name} log has no usable value")
            return None

        round_raw = extract_field(args, ROUND_FIELDS, kind.round_index)
        if round_raw is None:
            round_raw = to_int(entry.get('blockNumber'))
        symbol_or_round = '' if round_raw is None else str(round_raw)

        observed_at = to_seconds(extract_field(args, TIME_FIELDS, kind.time_index))
        if observed_at is None:
            observed_at = to_seconds(entry.get('blockTimestamp'))
        if observed_at is None:
            observed_at = int(self._clock())

        return NormalizedEvent(
            key=log_dedup_key(entry),
            update=Update(
                source_id=str(entry.get('address') or '').lower(),
                symbol_or_round=symbol_or_round,
                value=value,
                observed_at=observed_at,
            ),
        )

    def _match_kind(self, entry: Mapping) -> Optional[EventKind]:
        topics = entry.get('topics')
        if isinstance(topics, list) and topics and isinstance(topics[0], str):
            kind = self._kinds_by_topic.get(topics[0].lower())
            if kind:
                return kind
        name = entry.get('eventName')
        if isinstance(name, str):
            return self._kinds_by_name.get(name)
        return None

    def _filter(self, reason: str):
        self._stats.frames_filtered += 1
        self._logger.debug(f"Filtered frame: {reason}")

    def _skip(self, reason: str):
        self._stats.records_skipped += 1
        self._logger.debug(f"Skipped record: {reason}")
