"""Bounded, ordered store of decoded records for controller polling."""

from __future__ import annotations

import threading
from collections import deque
from typing import Iterable, Optional

from godot_telemetry_bridge.records import Record


class OutputAggregator:
    """Ring buffer of Records, polled by sequence number.

    The aggregator owns the sequence counter: ``append`` stamps each record
    with the next number.  The counter survives ``clear()``, so a controller
    that remembers its last-seen sequence never sees numbers reused after a
    reconnect.

    One producer (the reader task) appends, the controller reads with
    ``drain_since``; the lock only makes each read a consistent snapshot.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._records: deque[Record] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._last_sequence = 0
        self._evicted = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._last_sequence

    @property
    def evicted(self) -> int:
        """Records pushed out by capacity since the aggregator was created."""
        with self._lock:
            return self._evicted

    def append(self, record: Record) -> Record:
        """Store *record*, evicting the oldest at capacity; return the stamped copy."""
        with self._lock:
            self._last_sequence += 1
            stamped = record.with_sequence(self._last_sequence)
            if len(self._records) == self.capacity:
                self._evicted += 1
            self._records.append(stamped)
            return stamped

    def extend(self, records: Iterable[Record]) -> list[Record]:
        return [self.append(record) for record in records]

    def drain_since(self, sequence: int = 0, limit: Optional[int] = None) -> list[Record]:
        """Return records newer than *sequence*, oldest first, without removing them."""
        with self._lock:
            if not self._records or self._records[-1].sequence <= sequence:
                return []
            # Sequences in the deque are contiguous, so the start index is arithmetic.
            first = self._records[0].sequence
            start = max(sequence - first + 1, 0)
            selected = list(self._records)[start:]
        if limit is not None and limit >= 0:
            selected = selected[:limit]
        return selected

    def oldest_sequence(self) -> int:
        """Sequence of the oldest retained record, 0 when empty."""
        with self._lock:
            return self._records[0].sequence if self._records else 0

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
