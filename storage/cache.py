from __future__ import annotations

import copy
import json
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class CacheEntry:
    collection: str
    value: Any
    fetched_at: float


def cache_key(collection: str, query: Any = None) -> str:
    return f"{collection}:{json.dumps(query if query is not None else {}, sort_keys=True, default=str)}"


class CollectionCache:
    """TTL memo for collection reads, invalidated per collection on write.

    Values are deep-copied on the way in and out so a caller mutating a
    returned map cannot change what the next reader sees.
    """

    def __init__(self, ttl_seconds: float = 300, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    @property
    def size(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.fetched_at > self.ttl_seconds

    def get(self, collection: str, query: Any = None) -> tuple[bool, Any]:
        if not self.enabled:
            return (False, None)
        key = cache_key(collection, query)
        entry = self._entries.get(key)
        if entry is None:
            return (False, None)
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return (False, None)
        return (True, copy.deepcopy(entry.value))

    def set(self, collection: str, value: Any, query: Any = None) -> None:
        if not self.enabled:
            return
        self._entries[cache_key(collection, query)] = CacheEntry(
            collection=collection,
            value=copy.deepcopy(value),
            fetched_at=self._clock(),
        )

    def invalidate(self, collection: str) -> int:
        keys = [k for k, e in self._entries.items() if e.collection == collection]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
