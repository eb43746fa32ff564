"""In-memory LRU cache with per-entry expiry for search results and project data."""

import json
import logging
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PerformanceCache:
    """
    Thread-safe LRU cache whose entries expire after a TTL.

    Reading an entry marks it most recently used; the least recently used
    entry is evicted when max_size is exceeded.
    """

    def __init__(self, ttl_seconds: float = 300, max_size: int = 100):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _expired(self, expiry: float) -> bool:
        return time.time() > expiry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return default
            value, expiry = entry
            if self._expired(expiry):
                del self._entries[key]
                self.misses += 1
                return default
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expiry = time.time() + (self.ttl_seconds if ttl is None else ttl)
        with self._lock:
            self._entries[key] = (value, expiry)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._expired(entry[1]):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            now = time.time()
            expired = sum(1 for _, expiry in self._entries.values() if now > expiry)
            lookups = self.hits + self.misses
            return {
                "total": len(self._entries),
                "valid": len(self._entries) - expired,
                "expired": expired,
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / lookups if lookups else 0.0,
            }

    def persist(self, path: Path | str) -> int:
        """Write unexpired entries to a JSON file; returns how many were written."""
        with self._lock:
            now = time.time()
            data = {
                key: {"value": value, "expiry": expiry}
                for key, (value, expiry) in self._entries.items()
                if expiry > now
            }
        Path(path).write_text(json.dumps(data, default=str), encoding="utf-8")
        return len(data)

    def restore(self, path: Path | str) -> int:
        """Load unexpired entries written by persist(); returns how many were loaded."""
        path = Path(path)
        if not path.exists():
            return 0
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return 0

        now = time.time()
        loaded = 0
        with self._lock:
            for key, entry in data.items():
                if entry["expiry"] > now:
                    self._entries[key] = (entry["value"], entry["expiry"])
                    loaded += 1
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
        return loaded


search_cache = PerformanceCache(ttl_seconds=600, max_size=50)
project_cache = PerformanceCache(ttl_seconds=300, max_size=100)
article_cache = PerformanceCache(ttl_seconds=900, max_size=200)
api_cache = PerformanceCache(ttl_seconds=120, max_size=50)


def _encode(value: Any) -> str:
    return json.dumps(value or {}, sort_keys=True, default=str)


class CacheKeys:
    """Key builders shared by the pages and services."""

    @staticmethod
    def search(project_id: str, query: str, filters: Optional[dict] = None) -> str:
        return f"search:{project_id}:{query}:{_encode(filters)}"

    @staticmethod
    def articles(project_id: str, status: Optional[str] = None, page: Optional[int] = None) -> str:
        return f"articles:{project_id}:{status or 'all'}:{page or 0}"

    @staticmethod
    def stats(project_id: str) -> str:
        return f"stats:{project_id}"

    @staticmethod
    def projects(user_id: str) -> str:
        return f"projects:{user_id}"

    @staticmethod
    def api(endpoint: str, params: Optional[dict] = None) -> str:
        return f"api:{endpoint}:{_encode(params)}"


cache_keys = CacheKeys()

_MISSING = object()


def with_cache(cache: PerformanceCache, key: str, fn: Callable[[], T], ttl: Optional[float] = None) -> T:
    """Return the cached value for key, or call fn and cache its result."""
    value = cache.get(key, _MISSING)
    if value is not _MISSING:
        return value
    value = fn()
    cache.set(key, value, ttl)
    return value


def invalidate_prefix(cache: PerformanceCache, prefix: str) -> int:
    """Drop every key starting with prefix; returns how many were dropped."""
    dropped = 0
    for key in cache.keys():
        if key.startswith(prefix) and cache.delete(key):
            dropped += 1
    return dropped


def invalidate_project(project_id: str) -> None:
    """Forget cached data for a project after it changes."""
    invalidate_prefix(project_cache, cache_keys.stats(project_id))
    invalidate_prefix(article_cache, f"articles:{project_id}:")
    invalidate_prefix(search_cache, f"search:{project_id}:")
