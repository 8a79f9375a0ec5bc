"""
In-process TTL/LRU cache for short-lived reads (token balances).

Not shared between worker processes: each instance keeps its own copy, so a
write made by another process becomes visible here after at most one TTL.
Every write path must call delete() for the keys it touched.
"""
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable


_MISSING = object()


class TTLCache:
    """
    Thread-safe map with per-entry TTL and least-recently-used eviction.
    - clock: callable returning seconds (monotonic); injectable for tests
    - None is a valid cached value (negative caching)
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, tuple[Any, float]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _lookup(self, key: Hashable) -> Any:
        # caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return _MISSING
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self._misses += 1
            return _MISSING
        self._entries.move_to_end(key)
        self._hits += 1
        return value

    def _drop_expired(self) -> None:
        # caller holds the lock
        now = self._clock()
        for key in [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]:
            del self._entries[key]

    def _store(self, key: Hashable, value: Any, ttl: float | None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = (value, self._clock() + ttl)
        self._entries.move_to_end(key)
        if len(self._entries) > self.max_entries:
            # Сначала выбрасываем протухшие, живые вытесняем только если места всё равно нет
            self._drop_expired()
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            value = self._lookup(key)
        return default if value is _MISSING else value

    def contains(self, key: Hashable) -> bool:
        with self._lock:
            return self._lookup(key) is not _MISSING

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_or_set(self, key: Hashable, factory: Callable[[], Any], ttl: float | None = None) -> Any:
        """
        Read-through: return the cached value or call factory() and cache its result.
        factory runs outside the lock; two threads may both load on a miss, last write wins.
        """
        with self._lock:
            value = self._lookup(key)
        if value is not _MISSING:
            return value
        value = factory()
        with self._lock:
            self._store(key, value, ttl)
        return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }


def token_balance_key(user_id: str) -> str:
    return f"token_balance:{user_id}"
