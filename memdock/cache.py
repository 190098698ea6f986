"""
TTL response cache for the API client's GET path.

Entries carry the ETag the server sent with them. An expired entry stops
being served as fresh, but its ETag and body stay around so the client can
revalidate with If-None-Match and reuse the body on a 304.
"""

import time
import logging
from typing import Any, Dict, Optional, Tuple
from threading import Lock

logger = logging.getLogger(__name__)


class ResponseCache:
    """
    A small thread-safe TTL cache keyed by request path.

    Attributes:
        ttl: Default time-to-live in seconds
        maxsize: Maximum number of entries (oldest evicted first)
    """

    def __init__(self, ttl: float = 30.0, maxsize: int = 200):
        self.ttl = ttl
        self.maxsize = maxsize
        # key -> (expiry, value, etag)
        self._cache: Dict[str, Tuple[float, Any, Optional[str]]] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Tuple[bool, Any]:
        """
        Get a fresh value.

        Returns:
            Tuple of (found, value). Expired entries count as not found but
            are kept for revalidation.
        """
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or time.time() > entry[0]:
                self._misses += 1
                return False, None
            self._hits += 1
            return True, entry[1]

    def get_stale(self, key: str) -> Tuple[bool, Any]:
        """Get a value whether or not it has expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False, None
            return True, entry[1]

    def get_etag(self, key: str) -> Optional[str]:
        """The stored ETag, even for an expired entry."""
        with self._lock:
            entry = self._cache.get(key)
            return entry[2] if entry else None

    def set(self, key: str, value: Any, etag: Optional[str] = None, ttl: Optional[float] = None) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.maxsize:
                self._evict_expired()
            if key not in self._cache and len(self._cache) >= self.maxsize:
                self._evict_oldest()

            self._cache[key] = (time.time() + (self.ttl if ttl is None else ttl), value, etag)

    def touch(self, key: str, ttl: Optional[float] = None) -> bool:
        """Extend an entry's expiry (after a 304). Returns False if absent."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            self._cache[key] = (time.time() + (self.ttl if ttl is None else ttl), entry[1], entry[2])
            return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix. Returns count removed."""
        with self._lock:
            doomed = [k for k in self._cache if k.startswith(prefix)]
            for k in doomed:
                del self._cache[k]
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def _evict_expired(self) -> int:
        """Must be called with lock held."""
        now = time.time()
        expired = [k for k, (expiry, _, _) in self._cache.items() if now > expiry]
        for k in expired:
            del self._cache[k]
        return len(expired)

    def _evict_oldest(self) -> None:
        """Evict the entry closest to expiry. Must be called with lock held."""
        if not self._cache:
            return
        oldest_key = min(self._cache, key=lambda k: self._cache[k][0])
        del self._cache[oldest_key]

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self.maxsize,
                "ttl": self.ttl,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
