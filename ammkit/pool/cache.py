"""In-memory LRU cache with TTL for pool snapshots and scan results."""

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any


class TTLCache:
    """Simple LRU cache with TTL."""

    def __init__(
        self,
        maxsize: int = 1000,
        ttl: float = 300.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize LRU cache.

        Args:
            maxsize: Maximum number of cached items
            ttl: Time to live in seconds
            now_fn: Optional clock (for testing)
        """
        self.maxsize = maxsize
        self.ttl = ttl
        self._now_fn = now_fn or time.time
        self._entries: OrderedDict[Hashable, tuple[Any, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Any | None:
        """Get item from cache, evicting it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, stored_at = entry
        if self._now_fn() - stored_at > self.ttl:
            del self._entries[key]
            return None

        self._entries.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        """Set item in cache, evicting the least recently used if full."""
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.maxsize:
            self._entries.popitem(last=False)
        self._entries[key] = (value, self._now_fn())

    def delete(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
