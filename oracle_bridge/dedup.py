"""
Dedup Filter

Suppresses repeated delivery of the same underlying event when it
reaches the bridge through both the push socket and the poll backstop.

The seen-set is bounded: once it grows past its cap it is cleared in
one step (no LRU). Right after a clear, old duplicates can be admitted
again; the receiver is expected to consume idempotently.
"""

import logging
from typing import Optional, Set

from .rollup import RollupBuffer
from .types import BridgeStats, Update


DEFAULT_SEEN_SET_CAP = 5000


class SeenSet:
    """Bounded set of DedupKeys, cleared wholesale on overflow."""

    def __init__(self, cap: int = DEFAULT_SEEN_SET_CAP):
        if cap <= 0:
            raise ValueError("cap must be > 0")
        self.cap = cap
        self._keys: Set[str] = set()
        self.resets = 0

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> bool:
        """
        Insert a key.

        Returns:
            True if the insert pushed the set past its cap and it was cleared
        """
        self._keys.add(key)
        if len(self._keys) > self.cap:
            self._keys.clear()
            self.resets += 1
            return True
        return False

    def clear(self):
        self._keys.clear()


class DedupFilter:
    """
    Admits an update to the rollup buffer at most once per DedupKey
    within one seen-set epoch.
    """

    def __init__(
        self,
        buffer: RollupBuffer,
        seen: Optional[SeenSet] = None,
        stats: Optional[BridgeStats] = None,
        logger: logging.Logger = None,
    ):
        self._buffer = buffer
        self._seen = seen or SeenSet()
        self._stats = stats or BridgeStats()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def seen(self) -> SeenSet:
        return self._seen

    def record_once(self, key: Optional[str], update: Update) -> bool:
        """
        Admit `update` unless `key` was already seen.

        Insert and append happen together with no await in between, so
        the push and poll paths cannot interleave here.

        Args:
            key: DedupKey, or None for events without a stable identifier
            update: Normalized update

        Returns:
            True if the update was appended to the buffer
        """
        if key is None:
            self._buffer.append(update)
            self._stats.updates_admitted += 1
            return True

        if key in self._seen:
            self._stats.duplicates_dropped += 1
            return False

        cleared = self._seen.add(key)
        self._buffer.append(update)
        self._stats.updates_admitted += 1

        if cleared:
            self._stats.seen_set_resets += 1
            self._logger.info(
                f"Seen-set exceeded cap ({self._seen.cap}), cleared "
                f"(reset #{self._seen.resets})"
            )
        return True
