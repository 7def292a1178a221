"""Counter store interfaces.

The admission engine should depend on this abstraction (not the concrete
implementation) so the storage backend is chosen once, at construction time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class IncrementResult:
    """Result of an atomic increment.

    Attributes:
        count: Counter value after this increment.
        newly_created: Whether this increment created the entry (and set its TTL).
    """

    count: int
    newly_created: bool


@dataclass(frozen=True)
class CounterEntry:
    """Read-only view of a stored counter.

    Attributes:
        count: Current counter value.
        expires_at_ms: UNIX epoch milliseconds when the entry expires.
    """

    count: int
    expires_at_ms: int


class CounterStore(ABC):
    """Interface for counter stores.

    Implementations must guarantee that concurrent ``increment_and_get`` calls
    on the same key never lose an increment and that the TTL is set exactly
    once, when the entry is created. Increments never refresh the TTL.
    """

    #: Short backend name used in logs and health output.
    backend: str = "unknown"

    @abstractmethod
    def increment_and_get(self, key: str, ttl_ms: int) -> IncrementResult:
        """Atomically increment ``key``, creating it with ``ttl_ms`` if absent.

        Args:
            key: Counter key (already namespaced by the caller).
            ttl_ms: Lifetime applied only when the entry is created.

        Returns:
            IncrementResult with the post-increment count.

        Raises:
            StorageUnavailableError: If the backend cannot be reached in time.
        """
        raise NotImplementedError

    @abstractmethod
    def peek(self, key: str) -> CounterEntry | None:
        """Return the live entry for ``key`` without incrementing it."""
        raise NotImplementedError

    @abstractmethod
    def reset(self, key: str) -> None:
        """Delete ``key`` so the next increment starts a fresh entry."""
        raise NotImplementedError

    def ping(self) -> bool:
        """Report whether the backend is currently reachable."""
        return True

    def close(self) -> None:
        """Release background resources held by the store."""
