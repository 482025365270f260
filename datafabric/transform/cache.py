"""
Derived-artifact cache

Thread-safe TTL + LRU cache keyed by (record_id, commit_sequence, sink), so a
redelivered event reuses the artifact computed the first time instead of
recomputing a possibly different one.
"""
import time
import threading
from collections import OrderedDict
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar('T')

ArtifactKey = Tuple[str, int, str]


class ArtifactCache(Generic[T]):
    """
    Thread-safe cache with Time-To-Live (TTL) and maximum size.
    """

    def __init__(self, max_size: int = 10000, ttl_seconds: int = 3600):
        """
        Args:
            max_size: Maximum number of artifacts kept
            ttl_seconds: Time to live in seconds
        """
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._cache: "OrderedDict[ArtifactKey, Tuple[T, float]]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(record_id: str, commit_sequence: int, sink: str) -> ArtifactKey:
        return (record_id, commit_sequence, sink)

    def get(self, key: ArtifactKey) -> Optional[T]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, timestamp = entry
            if time.time() - timestamp > self.ttl_seconds:
                del self._cache[key]
                self.misses += 1
                return None

            # Move to end (LRU)
            self._cache.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: ArtifactKey, value: T) -> None:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            elif len(self._cache) >= self.max_size:
                self._cache.popitem(last=False)
            self._cache[key] = (value, time.time())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._cache),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }
