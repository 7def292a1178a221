"""In-process counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  It serves single-instance deployments and the degraded-mode fallback.
- Thread-safe: entries live in a sharded lock map, so keys in different shards
  never contend on the same lock.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from quota_gate.adapters.counter_store.base import CounterEntry, CounterStore, IncrementResult
from quota_gate.utils.sharded_lock import ShardedMap

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    count: int
    expires_at_ms: int


class InMemoryCounterStore(CounterStore):
    """Counter store backed by a sharded in-process map.

    Expired entries are treated as absent on access (and restarted at 1), so
    correctness never depends on the background sweep. The sweep only bounds
    memory by dropping entries nobody touches anymore.
    """

    backend = "memory"

    def __init__(
        self,
        *,
        shard_count: int = 64,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            shard_count: Number of lock shards.
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._entries: ShardedMap[_Entry] = ShardedMap(shard_count)
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def increment_and_get(self, key: str, ttl_ms: int) -> IncrementResult:
        """Increment ``key`` under its shard lock.

        Raises:
            ValueError: If key is empty or ttl_ms is not positive.
        """
        if not key:
            raise ValueError("key must be a non-empty string")
        if ttl_ms < 1:
            raise ValueError("ttl_ms must be >= 1")

        now_ms = self._now_ms()
        shard = self._entries.shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None or now_ms >= entry.expires_at_ms:
                shard.entries[key] = _Entry(count=1, expires_at_ms=now_ms + ttl_ms)
                return IncrementResult(count=1, newly_created=True)

            entry.count += 1
            return IncrementResult(count=entry.count, newly_created=False)

    def peek(self, key: str) -> CounterEntry | None:
        now_ms = self._now_ms()
        shard = self._entries.shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None or now_ms >= entry.expires_at_ms:
                return None
            return CounterEntry(count=entry.count, expires_at_ms=entry.expires_at_ms)

    def reset(self, key: str) -> None:
        shard = self._entries.shard_for(key)
        with shard.lock:
            shard.entries.pop(key, None)

    def sweep(self) -> int:
        """Remove expired entries, one shard at a time.

        Returns:
            Number of entries removed.
        """
        now_ms = self._now_ms()
        removed = 0
        for shard in self._entries:
            with shard.lock:
                expired = [k for k, e in shard.entries.items() if now_ms >= e.expires_at_ms]
                for key in expired:
                    del shard.entries[key]
                removed += len(expired)

        logger.debug(
            "counter_store.sweep",
            extra={"backend": self.backend, "removed": removed},
        )
        return removed

    def start_sweeper(self, interval_seconds: float) -> None:
        """Run ``sweep`` every ``interval_seconds`` on a daemon thread."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self._sweeper is not None and self._sweeper.is_alive():
            return

        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval_seconds,),
            name="counter-store-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def _sweep_loop(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            self.sweep()

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    def __len__(self) -> int:
        return len(self._entries)
