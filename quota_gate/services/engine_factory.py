"""Factory wiring an AdmissionEngine from settings."""

from __future__ import annotations

import logging
import time
from typing import Callable

from quota_gate.adapters.counter_store.factory import create_counter_stores
from quota_gate.adapters.counter_store.in_memory import InMemoryCounterStore
from quota_gate.core.config import RateLimitSettings, settings
from quota_gate.services.admission_engine import AdmissionEngine
from quota_gate.services.penalty_tracker import PenaltyTracker
from quota_gate.services.policy_resolver import PolicyResolver
from quota_gate.services.violation_journal import ViolationJournal
from quota_gate.services.window_accountant import WindowAccountant

logger = logging.getLogger(__name__)

MIN_SWEEP_INTERVAL_MS = 1000


def sweep_interval_ms(rate_settings: RateLimitSettings, resolver: PolicyResolver) -> int:
    """Half the smallest configured window, unless set explicitly."""

    if rate_settings.sweep_interval_ms:
        return rate_settings.sweep_interval_ms
    return max(MIN_SWEEP_INTERVAL_MS, resolver.smallest_window_ms() // 2)


def build_admission_engine(
    rate_settings: RateLimitSettings | None = None,
    *,
    clock: Callable[[], float] = time.time,
    start_sweeper: bool = True,
) -> AdmissionEngine:
    """Build a fully wired engine.

    The policy table is validated before any store is created, so a bad table
    stops startup without opening connections.

    Args:
        rate_settings: Explicit settings; defaults to the global settings.
        clock: Time source returning UNIX seconds, shared by all components.
        start_sweeper: Start the background sweeps of the in-process store
            and the penalty tracker.

    Returns:
        AdmissionEngine: Ready-to-serve engine.

    Raises:
        PolicyConfigurationError: If the policy table is invalid.
        ConfigurationAppError: If the storage backend is unknown.
    """
    cfg = rate_settings or settings.rate_limit

    resolver = PolicyResolver(
        cfg.policies,
        required_endpoint_classes=cfg.required_endpoint_classes,
    )
    store, fallback = create_counter_stores(cfg, clock=clock)
    penalties = PenaltyTracker(
        base_delay_ms=cfg.penalty_base_delay_ms,
        max_delay_ms=cfg.penalty_max_delay_ms,
        cap_exponent=cfg.penalty_cap_exponent,
        idle_reset_ms=cfg.penalty_idle_reset_ms,
        shard_count=cfg.lock_shards,
        clock=clock,
    )

    if start_sweeper:
        interval_seconds = sweep_interval_ms(cfg, resolver) / 1000
        for candidate in (store, fallback):
            if isinstance(candidate, InMemoryCounterStore):
                candidate.start_sweeper(interval_seconds)
        penalties.start_sweeper(interval_seconds)

    engine = AdmissionEngine(
        resolver=resolver,
        store=store,
        fallback_store=fallback,
        accountant=WindowAccountant(key_prefix=cfg.key_prefix),
        penalties=penalties,
        journal=ViolationJournal(capacity=cfg.journal_capacity),
        clock=clock,
    )

    logger.info(
        "admission_engine.ready",
        extra={
            "storage": store.backend,
            "fallback_storage": fallback.backend if fallback else None,
            "policies": len(resolver.policies),
        },
    )
    return engine
