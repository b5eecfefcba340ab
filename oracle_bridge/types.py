"""
Oracle Bridge Data Types

Plain records shared by every stage of the bridge:
ingestion -> normalization -> dedup -> rollup -> delivery.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import time


class ConnectionState(Enum):
    """Push connection lifecycle."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"


@dataclass(frozen=True)
class Update:
    """
    Canonical normalized price/oracle update.

    `value` is always a string so integer-encoded prices survive
    serialization exactly as they were received.
    """
    source_id: str  # Emitting contract / feed / address
    symbol_or_round: str  # Ticker for push feeds, round id for log feeds
    value: str
    observed_at: int  # Unix seconds

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the webhook wire shape."""
        return {
            'source_id': self.source_id,
            'symbol_or_round': self.symbol_or_round,
            'value': self.value,
            'observed_at': self.observed_at,
        }


@dataclass(frozen=True)
class NormalizedEvent:
    """An Update plus the stable identifier of the event it came from."""
    key: Optional[str]  # DedupKey; None when the source carries no identifier
    update: Update


@dataclass(frozen=True)
class IngestEvent:
    """Raw event placed on the engine channel by an ingestion source."""
    origin: str  # 'push' or 'poll'
    payload: Any
    received_at: float = field(default_factory=time.time)


@dataclass
class BridgeStats:
    """Counters for bridge monitoring."""
    frames_received: int = 0
    parse_errors: int = 0
    frames_filtered: int = 0
    records_skipped: int = 0
    updates_admitted: int = 0
    duplicates_dropped: int = 0
    seen_set_resets: int = 0
    deliveries_ok: int = 0
    deliveries_failed: int = 0
    updates_delivered: int = 0
    updates_requeued: int = 0
    reconnects: int = 0
    polls: int = 0
    poll_errors: int = 0
    started_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'frames_received': self.frames_received,
            'parse_errors': self.parse_errors,
            'frames_filtered': self.frames_filtered,
            'records_skipped': self.records_skipped,
            'updates_admitted': self.updates_admitted,
            'duplicates_dropped': self.duplicates_dropped,
            'seen_set_resets': self.seen_set_resets,
            'deliveries_ok': self.deliveries_ok,
            'deliveries_failed': self.deliveries_failed,
            'updates_delivered': self.updates_delivered,
            'updates_requeued': self.updates_requeued,
            'reconnects': self.reconnects,
            'polls': self.polls,
            'poll_errors': self.poll_errors,
            'started_at': self.started_at,
        }
