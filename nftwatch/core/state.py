"""Owned, injectable state shared between pipeline components."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterable


class BlockTimestampCache:
    """Bounded block-number → timestamp cache.

    Block timestamps never change, so eviction is plain FIFO: once full,
    the least recently inserted entry is dropped.
    """

    def __init__(self, capacity: int = 10000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._entries: OrderedDict[int, int] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, block_number: int) -> int | None:
        value = self._entries.get(block_number)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def put(self, block_number: int, timestamp: int) -> None:
        if block_number in self._entries:
            return
        if len(self._entries) >= self._capacity:
            self._entries.popitem(last=False)
        self._entries[block_number] = timestamp

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, block_number: object) -> bool:
        return block_number in self._entries


class CollectionsToPoll:
    """Mutable set of collection addresses the REST poller should query.

    Replaced wholesale by the wallet sync job; readers take a sorted snapshot
    so a refresh mid-iteration never changes a batch in flight.
    """

    def __init__(self, collections: Iterable[str] = ()) -> None:
        self._collections: frozenset[str] = frozenset(c.lower() for c in collections)

    def replace(self, collections: Iterable[str]) -> None:
        self._collections = frozenset(c.lower() for c in collections)

    def snapshot(self) -> list[str]:
        return sorted(self._collections)

    def __len__(self) -> int:
        return len(self._collections)

    def __contains__(self, collection: object) -> bool:
        return collection in self._collections
