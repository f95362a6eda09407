# promptshield/engine/cache.py
"""
Result cache: TTL- and size-bounded memoization of scan verdicts.

Keys are content fingerprints of (normalized text, context). Entries expire
once now - created_at >= ttl and are dropped on read. Inserting a new key at
capacity purges expired entries first, then evicts the least-hit, oldest
entries down to 80% of capacity (approximate LFU + LRU).

One lock guards every operation, so hit counts and eviction never race with
a concurrent read of the same key.
"""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

EVICTION_TARGET_RATIO = 0.8
FINGERPRINT_LENGTH = 32


def fingerprint(text: str, context: str = "all") -> str:
    """Deterministic cache key for (normalized text, context)."""
    digest = hashlib.sha256(f"{context}\x00{text}".encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class ResultCache:
    """
    Thread-safe bounded cache.

    Usage:
        cache = ResultCache(max_size=1000, default_ttl=300)
        cache.set(fingerprint(text, ctx), verdict_json)
        cached = cache.get(fingerprint(text, ctx))    # None on miss
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._misses += 1
                return None
            entry.hits += 1
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._make_room(now)
            # A re-inserted key never inherits the old hit count
            self._entries[key] = CacheEntry(key=key, value=value, created_at=now, ttl=ttl)

    def _make_room(self, now: float) -> None:
        """Purge expired, then evict (hits asc, created_at asc). Caller holds the lock."""
        self._purge_expired(now)
        if len(self._entries) < self.max_size:
            return
        target = int(self.max_size * EVICTION_TARGET_RATIO)
        victims = sorted(self._entries.values(), key=lambda e: (e.hits, e.created_at))
        for entry in victims[:len(self._entries) - target]:
            del self._entries[entry.key]
            self._evictions += 1

    def _purge_expired(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def cleanup(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            return self._purge_expired(now)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(now)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }
