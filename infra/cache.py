"""
Cache Layer

In-process key/value cache with an independent TTL per data category.
Sits in front of every upstream market data call (cache-aside).

Categories and default TTLs:
- price: 5 minutes (tickers, order books)
- candles: 5 minutes
- market_meta: 1 hour (market cap, rank, instrument mappings)
- news: 2 hours (sentiment inputs)

A miss never raises; callers fall through to a live fetch. Stored values
are deep copies so no caller ever shares mutable state with the cache.
"""
import copy
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

CATEGORIES = ("price", "candles", "market_meta", "news")

DEFAULT_TTL_SECONDS: Dict[str, float] = {
    "price": 300.0,
    "candles": 300.0,
    "market_meta": 3600.0,
    "news": 7200.0,
}


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    category: str
    expires_at: float  # clock() timestamp

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """
    Thread-safe TTL cache with per-category expiry.

    A read at or after an entry's expires_at is a miss even if the entry is
    still present (it is evicted on that read).
    """

    def __init__(self, ttl_seconds: Optional[Mapping[str, float]] = None,
                 clock: Callable[[], float] = time.monotonic, metrics=None):
        self._ttl = dict(DEFAULT_TTL_SECONDS)
        for category, ttl in (ttl_seconds or {}).items():
            if category not in CATEGORIES:
                raise ValueError(f"Unknown cache category: {category}")
            if ttl is None or float(ttl) < 0:
                raise ValueError(f"Invalid TTL for {category}: {ttl}")
            self._ttl[category] = float(ttl)
        self._clock = clock
        self._metrics = metrics
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

        logger.info(
            "Initialized TTLCache (%s)",
            ", ".join(f"{c}={self._ttl[c]:g}s" for c in CATEGORIES),
        )

    def ttl(self, category: str) -> float:
        self._check_category(category)
        return self._ttl[category]

    @staticmethod
    def _check_category(category: str) -> None:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown cache category: {category}")

    def get(self, key: str, category: str) -> Optional[Any]:
        """Return a copy of the cached value, or None on miss/expiry."""
        self._check_category(category)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and (entry.category != category or entry.expired(now)):
                if entry.expired(now):
                    del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                hit = False
                value = None
            else:
                self._hits += 1
                hit = True
                value = copy.deepcopy(entry.value)

        if self._metrics is not None:
            self._metrics.record_cache(category, hit)
        logger.debug("Cache %s: %s", "hit" if hit else "miss", key)
        return value

    def set(self, key: str, category: str, value: Any) -> None:
        """Store a full replacement value for key. None values are not cached."""
        self._check_category(category)
        if value is None:
            return
        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            category=category,
            expires_at=self._clock() + self._ttl[category],
        )
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: str) -> bool:
        """Remove key. Returns True if an entry was present."""
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info(f"Cache invalidated: {key}")
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with prefix. Returns count removed."""
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
        if keys:
            logger.info(f"Cache invalidated {len(keys)} keys with prefix {prefix!r}")
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.expired(now)]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": (self._hits / total) if total else 0.0,
            }
