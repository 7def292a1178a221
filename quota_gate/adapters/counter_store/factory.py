"""Factory for creating counter store instances."""

from __future__ import annotations

import time
from typing import Callable

from quota_gate.adapters.counter_store.base import CounterStore
from quota_gate.adapters.counter_store.in_memory import InMemoryCounterStore
from quota_gate.adapters.counter_store.redis_store import RedisCounterStore, create_redis_client
from quota_gate.core.config import RateLimitSettings, settings
from quota_gate.core.errors import ConfigurationAppError


def create_counter_stores(
    rate_settings: RateLimitSettings | None = None,
    *,
    clock: Callable[[], float] = time.time,
) -> tuple[CounterStore, InMemoryCounterStore | None]:
    """Instantiate the preferred counter store and its fallback.

    Reads configuration from quota_gate.core.config.settings unless explicit
    settings are passed.

    Returns:
        Tuple of (preferred_store, fallback_store). The fallback is the
        in-process store when the preferred store is Redis, else None.

    Raises:
        ConfigurationAppError: If the storage backend is not supported.
    """
    cfg = rate_settings or settings.rate_limit
    storage = cfg.storage.lower()

    if storage == "memory":
        return InMemoryCounterStore(shard_count=cfg.lock_shards, clock=clock), None

    if storage == "redis":
        client = create_redis_client(cfg.redis_url, timeout_ms=cfg.redis_timeout_ms)
        preferred = RedisCounterStore(client=client, clock=clock)
        fallback = InMemoryCounterStore(shard_count=cfg.lock_shards, clock=clock)
        return preferred, fallback

    raise ConfigurationAppError(
        code="unknown_counter_store",
        message=f"Unknown counter store: '{storage}'. Supported stores: redis, memory",
    )
