"""Escalating penalty delays for repeat offenders.

``delay = min(base * 2 ** min(previous_violations, cap_exponent), max_delay)``

The first violation costs ``base``; each consecutive one doubles it until the
exponent cap or ``max_delay`` is reached. An identity that goes
``idle_reset_ms`` without a violation starts over from ``base``.

The delay is advisory: the engine reports it as ``retry_after_ms`` and the HTTP
layer decides whether to sleep before answering 429 or just send the header.

Idle identities are dropped by ``sweep``, never on the request path.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from quota_gate.utils.sharded_lock import ShardedMap

logger = logging.getLogger(__name__)


@dataclass
class PenaltyState:
    """Violation history for one identity."""

    consecutive_violations: int
    last_violation_at_ms: int


class PenaltyTracker:
    """Per-identity exponential backoff with idle decay."""

    def __init__(
        self,
        *,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30_000,
        cap_exponent: int = 6,
        idle_reset_ms: int = 3_600_000,
        shard_count: int = 64,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if base_delay_ms < 0 or max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if cap_exponent < 0:
            raise ValueError("cap_exponent must be >= 0")
        if idle_reset_ms < 1:
            raise ValueError("idle_reset_ms must be >= 1")

        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._cap_exponent = cap_exponent
        self._idle_reset_ms = idle_reset_ms
        self._clock = clock
        self._states: ShardedMap[PenaltyState] = ShardedMap(shard_count)
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    @property
    def base_delay_ms(self) -> int:
        return self._base_delay_ms

    @property
    def max_delay_ms(self) -> int:
        return self._max_delay_ms

    def delay_for(self, previous_violations: int) -> int:
        exponent = min(previous_violations, self._cap_exponent)
        return min(self._base_delay_ms * (2**exponent), self._max_delay_ms)

    def record_violation(self, identity: str, now_ms: int | None = None) -> int:
        """Register a denial for ``identity`` and return its penalty delay (ms)."""
        now_ms = self._now_ms(now_ms)
        shard = self._states.shard_for(identity)
        with shard.lock:
            state = shard.entries.get(identity)
            if state is not None and self._is_idle(state, now_ms):
                state = None

            previous = state.consecutive_violations if state else 0
            shard.entries[identity] = PenaltyState(
                consecutive_violations=previous + 1,
                last_violation_at_ms=now_ms,
            )

        return self.delay_for(previous)

    def decay(self, identity: str, now_ms: int | None = None) -> None:
        """Forget ``identity``'s history once it has been idle long enough."""
        now_ms = self._now_ms(now_ms)
        shard = self._states.shard_for(identity)
        with shard.lock:
            state = shard.entries.get(identity)
            if state is not None and self._is_idle(state, now_ms):
                del shard.entries[identity]

    def state(self, identity: str) -> PenaltyState | None:
        shard = self._states.shard_for(identity)
        with shard.lock:
            state = shard.entries.get(identity)
            if state is None:
                return None
            return PenaltyState(state.consecutive_violations, state.last_violation_at_ms)

    def clear(self, identity: str) -> None:
        shard = self._states.shard_for(identity)
        with shard.lock:
            shard.entries.pop(identity, None)

    def sweep(self, now_ms: int | None = None) -> int:
        """Drop idle identities, one shard at a time.

        Idle history is already ignored on access; this only bounds memory.

        Returns:
            Number of identities removed.
        """
        now_ms = self._now_ms(now_ms)
        removed = 0
        for shard in self._states:
            with shard.lock:
                idle = [k for k, s in shard.entries.items() if self._is_idle(s, now_ms)]
                for key in idle:
                    del shard.entries[key]
                removed += len(idle)

        logger.debug("penalty_tracker.sweep", extra={"removed": removed})
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
            name="penalty-tracker-sweeper",
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

    def _is_idle(self, state: PenaltyState, now_ms: int) -> bool:
        return now_ms - state.last_violation_at_ms >= self._idle_reset_ms

    def _now_ms(self, now_ms: int | None) -> int:
        if now_ms is not None:
            return now_ms
        return int(self._clock() * 1000)

    def __len__(self) -> int:
        return len(self._states)
