"""TTL cache for processed records."""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple

from ..models.log_record import LogRecord

# Characters of the message that participate in the cache key
KEY_MESSAGE_LENGTH = 50


def record_cache_key(record: LogRecord) -> Tuple[str, str, str]:
    return (record.level.value, record.message[:KEY_MESSAGE_LENGTH], record.service)


class TTLCache:
    """
    Thread-safe bounded cache with a fixed time-to-live.

    Entries expire ``ttl_ms`` after insertion regardless of access. When full,
    the least recently used entry is evicted.
    """

    def __init__(
        self,
        max_size: int = 10000,
        ttl_ms: int = 300000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._store: "OrderedDict[Hashable, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def _expired(self, stored_at: float, now: float) -> bool:
        return (now - stored_at) * 1000 >= self.ttl_ms

    def get(self, key: Hashable) -> Optional[Any]:
        """Get value if present and not expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._expired(stored_at, self._clock()):
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._store:
                del self._store[key]
            elif len(self._store) >= self.max_size:
                self._store.popitem(last=False)
                self.evictions += 1
            self._store[key] = (value, self._clock())

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, stored_at) in self._store.items() if self._expired(stored_at, now)]
            for key in expired:
                del self._store[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def resize(self, max_size: int, ttl_ms: Optional[int] = None) -> None:
        with self._lock:
            self.max_size = max_size
            if ttl_ms is not None:
                self.ttl_ms = ttl_ms
            while len(self._store) > self.max_size:
                self._store.popitem(last=False)
                self.evictions += 1

    def __len__(self) -> int:
        return len(self._store)
