"""Sharded lock map for per-key state mutated by many request threads.

Each shard owns a ``threading.Lock`` and the dict of entries it guards, so two
keys that land in different shards never contend.
"""

from __future__ import annotations

import threading
import zlib
from dataclasses import dataclass, field
from typing import Generic, Iterator, TypeVar

V = TypeVar("V")


@dataclass
class Shard(Generic[V]):
    """One lock plus the entries it guards."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[str, V] = field(default_factory=dict)


class ShardedMap(Generic[V]):
    """Fixed set of shards selected by a stable hash of the key.

    Callers take ``shard.lock`` themselves and mutate ``shard.entries`` while
    holding it.
    """

    def __init__(self, shard_count: int = 64) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self._shards: list[Shard[V]] = [Shard() for _ in range(shard_count)]

    def shard_for(self, key: str) -> Shard[V]:
        # crc32 is stable across processes, unlike hash() with PYTHONHASHSEED.
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def __iter__(self) -> Iterator[Shard[V]]:
        return iter(self._shards)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()
