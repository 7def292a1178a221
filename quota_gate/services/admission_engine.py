"""Admission engine orchestrating policy, counting, penalties and the journal.

Per call:
1. Resolve the policy for ``(endpoint_class, tier)``.
2. Compute the fixed-window counter key.
3. Atomically increment the counter in the preferred store. On
   StorageUnavailableError, increment in the in-process fallback instead and
   flag the result ``degraded``. The fallback is call-scoped: the next call
   tries the preferred store again.
4. Compare the count to the limit (count-then-check).
5. On deny, compute the penalty delay and journal the violation. On admit,
   let the penalty history decay.
6. Return limit/remaining/reset metadata for the rate limit headers.

If both stores fail the request is admitted (fail open) and the outage is
logged at CRITICAL. Configuration and caller errors (unknown endpoint class,
unusable identity) raise.

Every collaborator is injected and synchronizes only its own state; there is
no engine-wide lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from quota_gate.adapters.counter_store.base import CounterEntry, CounterStore
from quota_gate.core.errors import (
    InvalidIdentityError,
    StorageUnavailableError,
    TotalOutageError,
)
from quota_gate.core.logging import hash_identity
from quota_gate.services.penalty_tracker import PenaltyTracker
from quota_gate.services.policy_resolver import Policy, PolicyResolver
from quota_gate.services.violation_journal import ViolationJournal, ViolationRecord
from quota_gate.services.window_accountant import Decision, WindowAccountant

logger = logging.getLogger(__name__)

MAX_IDENTITY_LENGTH = 512
DEGRADED_WINDOW_MS = 60_000


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Requests per window (0 for unlimited policies).
        remaining: Requests left in the current window (0 when blocked).
        reset_at_ms: UNIX epoch milliseconds when the window resets.
        policy_name: Name of the policy that governed the decision.
        window_ms: Window length of that policy.
        retry_after_ms: Advisory penalty delay, set only when denied.
        degraded: True when the decision was counted outside the preferred store.
        reset_in_ms: Milliseconds from the decision until the window resets.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    policy_name: str
    window_ms: int
    retry_after_ms: int | None = None
    degraded: bool = False
    reset_in_ms: int = 0

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    @property
    def reset_epoch_seconds(self) -> int:
        return -(-self.reset_at_ms // 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_epoch_seconds": self.reset_epoch_seconds,
            "retry_after_ms": self.retry_after_ms,
            "policy_name": self.policy_name,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class UsageStatus:
    """Read-only usage snapshot of an identity's current window."""

    policy_name: str
    limit: int
    used: int
    remaining: int
    reset_at_ms: int
    window_ms: int
    consecutive_violations: int
    degraded: bool = False


@dataclass(frozen=True)
class HealthStatus:
    preferred_store_healthy: bool
    degraded_calls_last_minute: int
    storage: str
    fallback_storage: str | None


class AdmissionEngine:
    """Per-request admission control façade."""

    def __init__(
        self,
        *,
        resolver: PolicyResolver,
        store: CounterStore,
        fallback_store: CounterStore | None = None,
        accountant: WindowAccountant | None = None,
        penalties: PenaltyTracker | None = None,
        journal: ViolationJournal | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._fallback = fallback_store
        self._accountant = accountant if accountant is not None else WindowAccountant()
        self._penalties = penalties if penalties is not None else PenaltyTracker(clock=clock)
        self._journal = journal if journal is not None else ViolationJournal()
        self._clock = clock
        self._degraded_lock = threading.Lock()
        self._degraded_at_ms: deque[int] = deque()

    @property
    def resolver(self) -> PolicyResolver:
        return self._resolver

    @property
    def journal(self) -> ViolationJournal:
        return self._journal

    @property
    def penalties(self) -> PenaltyTracker:
        return self._penalties

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def check(
        self,
        identity: str,
        endpoint_class: str,
        tier: str | None = None,
        now_ms: int | None = None,
    ) -> AdmissionResult:
        """Count one request and decide whether to admit it.

        Args:
            identity: Caller-derived identity (IP, user id or email).
            endpoint_class: Endpoint class of the operation.
            tier: Subscription tier, if known.
            now_ms: UNIX epoch milliseconds; defaults to the engine clock.

        Returns:
            AdmissionResult with the decision and header metadata.

        Raises:
            InvalidIdentityError: If ``identity`` is unusable.
            PolicyNotFoundError: If ``endpoint_class`` has no policy.
        """
        self._validate_identity(identity)
        now_ms = self._now_ms(now_ms)
        policy = self._resolver.resolve(endpoint_class, tier)
        bounds = self._accountant.window_bounds(policy, now_ms)

        if policy.unlimited:
            self._penalties.decay(identity, now_ms)
            return AdmissionResult(
                allowed=True,
                limit=0,
                remaining=0,
                reset_at_ms=bounds.end_ms,
                reset_in_ms=bounds.end_ms - now_ms,
                policy_name=policy.name,
                window_ms=policy.window_ms,
            )

        key = self._accountant.window_key(policy, identity, now_ms)
        try:
            count, degraded = self._increment(key, policy)
        except TotalOutageError as exc:
            logger.critical(
                "rate_limit.total_outage",
                extra={
                    "policy_name": policy.name,
                    "identity_hash": hash_identity(identity),
                    "error_code": exc.code,
                },
            )
            return AdmissionResult(
                allowed=True,
                limit=policy.limit,
                remaining=max(0, policy.limit - 1),
                reset_at_ms=bounds.end_ms,
                reset_in_ms=bounds.end_ms - now_ms,
                policy_name=policy.name,
                window_ms=policy.window_ms,
                degraded=True,
            )

        remaining = max(0, policy.limit - count)
        decision = self._accountant.decide(count, policy.limit)

        if decision is Decision.DENY:
            retry_after_ms = self._penalties.record_violation(identity, now_ms)
            self._journal.record(
                ViolationRecord(
                    identity=identity,
                    policy_name=policy.name,
                    endpoint_class=policy.endpoint_class,
                    timestamp_ms=now_ms,
                    count_at_violation=count,
                    tier=tier,
                )
            )
            logger.warning(
                "rate_limit.denied",
                extra={
                    "policy_name": policy.name,
                    "identity_hash": hash_identity(identity),
                    "count": count,
                    "limit": policy.limit,
                    "retry_after_ms": retry_after_ms,
                    "degraded": degraded,
                },
            )
            return AdmissionResult(
                allowed=False,
                limit=policy.limit,
                remaining=remaining,
                reset_at_ms=bounds.end_ms,
                reset_in_ms=bounds.end_ms - now_ms,
                policy_name=policy.name,
                window_ms=policy.window_ms,
                retry_after_ms=retry_after_ms,
                degraded=degraded,
            )

        self._penalties.decay(identity, now_ms)
        logger.debug(
            "rate_limit.allowed",
            extra={
                "policy_name": policy.name,
                "identity_hash": hash_identity(identity),
                "remaining": remaining,
                "degraded": degraded,
            },
        )
        return AdmissionResult(
            allowed=True,
            limit=policy.limit,
            remaining=remaining,
            reset_at_ms=bounds.end_ms,
            reset_in_ms=bounds.end_ms - now_ms,
            policy_name=policy.name,
            window_ms=policy.window_ms,
            degraded=degraded,
        )

    def _increment(self, key: str, policy: Policy) -> tuple[int, bool]:
        """Increment in the preferred store, degrading to the fallback once.

        Returns:
            Tuple of (count, degraded).

        Raises:
            TotalOutageError: If no store could count the request.
        """
        try:
            return self._store.increment_and_get(key, policy.window_ms).count, False
        except StorageUnavailableError as exc:
            if self._fallback is None:
                raise TotalOutageError(
                    code="total_outage",
                    message="Counter store unavailable and no fallback configured",
                    details={"backend": self._store.backend, "policy_name": policy.name},
                ) from exc
            preferred_error = exc

        self._note_degraded()
        logger.warning(
            "rate_limit.degraded",
            extra={
                "policy_name": policy.name,
                "backend": self._store.backend,
                "fallback_backend": self._fallback.backend,
                "error_code": preferred_error.code,
            },
        )
        try:
            return self._fallback.increment_and_get(key, policy.window_ms).count, True
        except StorageUnavailableError as exc:
            raise TotalOutageError(
                code="total_outage",
                message="Preferred and fallback counter stores are both unavailable",
                details={"backend": self._fallback.backend, "policy_name": policy.name},
            ) from exc

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    def status(
        self,
        identity: str,
        endpoint_class: str,
        tier: str | None = None,
        now_ms: int | None = None,
    ) -> UsageStatus:
        """Report current-window usage without counting a request."""
        self._validate_identity(identity)
        now_ms = self._now_ms(now_ms)
        policy = self._resolver.resolve(endpoint_class, tier)
        bounds = self._accountant.window_bounds(policy, now_ms)
        penalty = self._penalties.state(identity)
        violations = penalty.consecutive_violations if penalty else 0

        entry: CounterEntry | None = None
        degraded = False
        if not policy.unlimited:
            key = self._accountant.window_key(policy, identity, now_ms)
            try:
                entry = self._store.peek(key)
            except StorageUnavailableError:
                if self._fallback is None:
                    raise
                degraded = True
                entry = self._fallback.peek(key)

        used = entry.count if entry else 0
        return UsageStatus(
            policy_name=policy.name,
            limit=policy.limit,
            used=used,
            remaining=0 if policy.unlimited else max(0, policy.limit - used),
            reset_at_ms=bounds.end_ms,
            window_ms=policy.window_ms,
            consecutive_violations=violations,
            degraded=degraded,
        )

    def reset(
        self,
        identity: str,
        endpoint_class: str,
        tier: str | None = None,
        now_ms: int | None = None,
    ) -> None:
        """Clear the identity's current window counter and penalty history.

        Unlike ``check``, this does not absorb storage failures: an operator
        must know whether the unlock happened.

        Raises:
            StorageUnavailableError: If the preferred store cannot be reached.
        """
        self._validate_identity(identity)
        now_ms = self._now_ms(now_ms)
        policy = self._resolver.resolve(endpoint_class, tier)
        key = self._accountant.window_key(policy, identity, now_ms)

        if self._fallback is not None:
            self._fallback.reset(key)
        self._store.reset(key)
        self._penalties.clear(identity)

        logger.info(
            "rate_limit.reset",
            extra={"policy_name": policy.name, "identity_hash": hash_identity(identity)},
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    def recent_violations(self, limit: int = 100) -> list[ViolationRecord]:
        return self._journal.recent(limit)

    def clear_violations(self) -> None:
        self._journal.clear()

    def health(self) -> HealthStatus:
        return HealthStatus(
            preferred_store_healthy=self._store.ping(),
            degraded_calls_last_minute=self._degraded_calls_last_minute(),
            storage=self._store.backend,
            fallback_storage=self._fallback.backend if self._fallback else None,
        )

    def close(self) -> None:
        self._penalties.close()
        self._store.close()
        if self._fallback is not None:
            self._fallback.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _note_degraded(self) -> None:
        now_ms = self._now_ms(None)
        with self._degraded_lock:
            self._degraded_at_ms.append(now_ms)
            self._prune_degraded_locked(now_ms)

    def _degraded_calls_last_minute(self) -> int:
        now_ms = self._now_ms(None)
        with self._degraded_lock:
            self._prune_degraded_locked(now_ms)
            return len(self._degraded_at_ms)

    def _prune_degraded_locked(self, now_ms: int) -> None:
        cutoff = now_ms - DEGRADED_WINDOW_MS
        while self._degraded_at_ms and self._degraded_at_ms[0] <= cutoff:
            self._degraded_at_ms.popleft()

    def _now_ms(self, now_ms: int | None) -> int:
        if now_ms is not None:
            return now_ms
        return int(self._clock() * 1000)

    @staticmethod
    def _validate_identity(identity: Any) -> None:
        if not isinstance(identity, str) or not identity.strip():
            raise InvalidIdentityError(
                code="invalid_identity",
                message="identity must be a non-empty string",
            )
        if len(identity) > MAX_IDENTITY_LENGTH:
            raise InvalidIdentityError(
                code="invalid_identity",
                message=f"identity exceeds {MAX_IDENTITY_LENGTH} characters",
            )
        if not identity.isprintable():
            raise InvalidIdentityError(
                code="invalid_identity",
                message="identity contains control characters",
            )
