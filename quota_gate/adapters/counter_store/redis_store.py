"""Redis-backed counter store shared by every service instance.

Increment and first-time expiry happen in one MULTI/EXEC round-trip:

    SET key 0 PX ttl NX
    INCR key

``SET ... NX`` only succeeds for the caller that creates the key, so the TTL is
applied exactly once and later increments never push the expiry out (otherwise
a window under sustained load would never close). Redis serializes the
transaction, which gives a strict total order of increments per key across
instances.

Fail-fast policy:
    Every Redis error (connection refused, socket timeout, ...) is re-raised as
    StorageUnavailableError. The store never retries inline; degradation is the
    admission engine's job.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import redis
from redis.backoff import NoBackoff
from redis.exceptions import RedisError
from redis.retry import Retry

from quota_gate.adapters.counter_store.base import CounterEntry, CounterStore, IncrementResult
from quota_gate.core.errors import StorageUnavailableError

logger = logging.getLogger(__name__)


def create_redis_client(url: str, *, timeout_ms: int = 50) -> redis.Redis:
    """Build a Redis client with short timeouts and no automatic retries.

    Args:
        url: Redis connection URL.
        timeout_ms: Socket and connect timeout in milliseconds.

    Returns:
        redis.Redis: Client with a thread-safe connection pool.
    """

    timeout_s = timeout_ms / 1000
    return redis.Redis.from_url(
        url,
        socket_timeout=timeout_s,
        socket_connect_timeout=timeout_s,
        retry_on_timeout=False,
        retry=Retry(NoBackoff(), 0),
    )


class RedisCounterStore(CounterStore):
    """Counter store using Redis INCR with a create-once TTL.

    Args:
        client: A sync Redis client (redis.Redis compatible). Shared read-write
            by all request threads; its connection pool is thread-safe.
        clock: Time source returning UNIX seconds (used to turn PTTL into an
            absolute expiry for ``peek``).
    """

    backend = "redis"

    def __init__(
        self,
        *,
        client: Any,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._clock = clock

    def increment_and_get(self, key: str, ttl_ms: int) -> IncrementResult:
        if not key:
            raise ValueError("key must be a non-empty string")
        if ttl_ms < 1:
            raise ValueError("ttl_ms must be >= 1")

        try:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, px=ttl_ms, nx=True)
                pipe.incr(key)
                created, count = pipe.execute()
        except RedisError as exc:
            raise self._unavailable("increment", exc) from exc

        return IncrementResult(count=int(count), newly_created=bool(created))

    def peek(self, key: str) -> CounterEntry | None:
        try:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.pttl(key)
                raw_count, pttl = pipe.execute()
        except RedisError as exc:
            raise self._unavailable("peek", exc) from exc

        if raw_count is None or pttl is None or int(pttl) < 0:
            return None
        now_ms = int(self._clock() * 1000)
        return CounterEntry(count=int(raw_count), expires_at_ms=now_ms + int(pttl))

    def reset(self, key: str) -> None:
        try:
            self._client.delete(key)
        except RedisError as exc:
            raise self._unavailable("reset", exc) from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError as exc:
            logger.warning(
                "counter_store.close_failed",
                extra={"backend": self.backend, "error_type": type(exc).__name__},
            )

    def _unavailable(self, operation: str, exc: Exception) -> StorageUnavailableError:
        return StorageUnavailableError(
            code="storage_unavailable",
            message=f"Redis counter store unavailable during {operation}",
            details={
                "backend": self.backend,
                "context": {"operation": operation, "error_type": type(exc).__name__},
            },
        )
