#!/usr/bin/env python3
"""
Market-data Cache Store
In-memory entries with logical staleness and metrics.

Implements:
- get(key) → CacheEntry | None
- put(key, entry)
- is_fresh(entry, ttl, now) → bool
- lookup(key, ttl) → (entry | None, fresh)
- invalidate(key) / clear()
- get_stats() → {hits, misses, stale_reads, writes, evictions, entries}
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """One cached payload. Replaced whole on every successful fetch."""
    payload: Any
    fetched_at: float
    source: str
    provenance: str = "primary"

    def age(self, now: float) -> float:
        return max(now - self.fetched_at, 0.0)


def is_fresh(entry: CacheEntry, ttl: float, now: float) -> bool:
    """True while the entry is younger than its TTL.

    Once false for some `now` it stays false for every later `now`.
    """
    return now - entry.fetched_at < ttl


class CacheStore:
    """
    Keyed cache of normalized payloads.

    Design principles:
    - No size bound or age eviction; staleness is decided by the reader's TTL
    - Stale is not absent: stale entries remain available for degradation
    - One lock, O(1) critical sections, no I/O under it
    """

    is_fresh = staticmethod(is_fresh)

    def __init__(self, clock=time.time):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

        self.stats = {
            "hits": 0,
            "misses": 0,
            "stale_reads": 0,
            "writes": 0,
            "evictions": 0,
            "start_time": clock(),
        }

        logger.info("CacheStore initialized (in-memory)")

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry
            self.stats["writes"] += 1
        logger.info(f"Cached {key} (source={entry.source}, provenance={entry.provenance})")

    def lookup(self, key: str, ttl: float) -> Tuple[Optional[CacheEntry], bool]:
        """Entry for key plus whether it is still fresh. Updates hit/miss metrics."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return None, False
            fresh = is_fresh(entry, ttl, now)
            if fresh:
                self.stats["hits"] += 1
            else:
                self.stats["stale_reads"] += 1
        if not fresh:
            logger.debug(f"Stale entry for {key} (age={entry.age(now):.0f}s, ttl={ttl}s)")
        return entry, fresh

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self.stats["evictions"] += 1
        if removed:
            logger.info(f"Invalidated {key}")
        return removed

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
            self.stats["evictions"] += cleared
        if cleared > 0:
            logger.info(f"Cleared {cleared} cache entries")
        return cleared

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self.stats)
            entries = len(self._entries)

        lookups = stats["hits"] + stats["misses"] + stats["stale_reads"]
        hit_rate = (stats["hits"] / lookups * 100) if lookups > 0 else 0
        return {
            "hits": stats["hits"],
            "misses": stats["misses"],
            "stale_reads": stats["stale_reads"],
            "writes": stats["writes"],
            "evictions": stats["evictions"],
            "hit_rate_percent": round(hit_rate, 1),
            "entries": entries,
            "uptime_seconds": int(self._clock() - stats["start_time"]),
        }


class LastKnownValues:
    """Last successful value per single-value feed (e.g. fear-greed). No TTL."""

    def __init__(self):
        self._values: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def remember(self, feed: str, entry: CacheEntry) -> None:
        with self._lock:
            self._values[feed] = entry

    def recall(self, feed: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._values.get(feed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
