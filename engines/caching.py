"""In-process caches with explicit invalidation."""

import hashlib
import time
from threading import Lock
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Thread-safe TTL cache with an injectable clock.

    Callers invalidate entries after writing the underlying record; expiry
    only bounds how stale an entry written elsewhere can get.
    """

    def __init__(self, ttl_seconds: float, clock: Optional[Callable[[], float]] = None, max_size: int = 1024):
        self._ttl = float(ttl_seconds)
        self._clock = clock or time.monotonic
        self._max_size = max_size
        self._entries: Dict[Hashable, Tuple[float, V]] = {}
        self._lock = Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self._ttl:
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                self._entries.pop(oldest, None)
            self._entries[key] = (self._clock(), value)

    def get_or_load(self, key: Hashable, loader: Callable[[], V]) -> V:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class EmbeddingCache:
    """Thread-safe LRU cache for embeddings with size limit."""

    def __init__(self, max_size: int = 2000):
        self._cache: Dict[str, List[float]] = {}
        self._access_order: List[str] = []
        self._max_size = max_size
        self._lock = Lock()

    def add(self, text: str, embedding: List[float]) -> None:
        """Add an embedding to the cache with LRU eviction."""
        if not embedding:
            return
        key = self._make_key(text)
        with self._lock:
            if key in self._cache:
                self._access_order.remove(key)
            elif len(self._cache) >= self._max_size:
                lru_key = self._access_order.pop(0)
                self._cache.pop(lru_key, None)
            self._cache[key] = embedding
            self._access_order.append(key)

    def get(self, text: str) -> Optional[List[float]]:
        """Retrieve an embedding from the cache, updating access order."""
        key = self._make_key(text)
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is not None:
                self._access_order.remove(key)
                self._access_order.append(key)
            return embedding

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._access_order.clear()

    @staticmethod
    def _make_key(text: str) -> str:
        return hashlib.sha1(text.encode("utf-8")).hexdigest()
