"""Bounded in-memory journal of rate limit denials.

Diagnostic data for the monitoring endpoints, never persisted. The oldest
records are evicted once capacity is reached.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViolationRecord:
    """One denied request."""

    identity: str
    policy_name: str
    endpoint_class: str
    timestamp_ms: int
    count_at_violation: int
    tier: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ViolationJournal:
    """Thread-safe, fixed-capacity ring buffer of violations.

    Attributes:
        capacity: Maximum number of retained records.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._records: deque[ViolationRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._recorded = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"ViolationJournal(capacity={self._capacity}, size={len(self._records)})"

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, entry: ViolationRecord) -> None:
        """Append ``entry``; best effort, never raises."""

        try:
            with self._lock:
                self._records.append(entry)
                self._recorded += 1
        except Exception:  # noqa: BLE001 - diagnostics must not fail a request
            logger.debug("violation_journal.record_dropped", exc_info=True)

    def recent(self, limit: int | None = None) -> list[ViolationRecord]:
        """Return up to ``limit`` records, newest first."""

        with self._lock:
            records = list(self._records)
        records.reverse()
        if limit is None:
            return records
        return records[: max(0, limit)]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def stats(self) -> dict[str, int]:
        """Return journal size counters without exposing records."""

        with self._lock:
            return {
                "capacity": self._capacity,
                "entries": len(self._records),
                "recorded_total": self._recorded,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
