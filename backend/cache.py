"""
Export Result Cache Module

Content-addressed reuse of exports. Keys are the fingerprint of
(format, normalized filters); values point at the job that produced (or is
producing) the result.

- In-flight entries have no TTL and live until their job ends, so identical
  requests made meanwhile attach to the running job.
- Completed entries get a TTL tiered by artifact size: results that were
  expensive to build are kept longer.

In-memory only; the single supervisor process owns it.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Single cache entry with TTL tracking."""
    job_id: str
    created_at: float
    ttl: Optional[int] = None  # seconds; None while in flight
    temp_path: Optional[str] = None
    size_bytes: int = 0
    completed_at: Optional[datetime] = None
    hits: int = 0

    @property
    def in_flight(self) -> bool:
        return self.ttl is None

    def is_expired(self) -> bool:
        """Check if entry has expired."""
        if self.ttl is None:
            return False
        return time.time() - self.created_at > self.ttl

    def access(self) -> "CacheEntry":
        """Access the entry and increment hit counter."""
        self.hits += 1
        return self


class ResultCache:
    """
    In-memory cache of export results.

    Features:
    - Size-tiered TTL for completed results
    - At most one in-flight job per fingerprint
    - Statistics tracking
    - Configurable max size, evicting only completed entries (oldest first)
    """

    DEFAULT_TTL_SMALL = 3600  # 1 hour
    DEFAULT_TTL_MEDIUM = 86400  # 24 hours
    DEFAULT_TTL_LARGE = 604800  # 7 days
    MAX_SIZE = 500

    def __init__(
        self,
        ttl_small: int = DEFAULT_TTL_SMALL,
        ttl_medium: int = DEFAULT_TTL_MEDIUM,
        ttl_large: int = DEFAULT_TTL_LARGE,
        medium_threshold_bytes: int = 5 * 1024 * 1024,
        large_threshold_bytes: int = 100 * 1024 * 1024,
        max_size: int = MAX_SIZE,
        enabled: bool = True,
    ):
        self._cache: Dict[str, CacheEntry] = {}
        self.ttl_small = ttl_small
        self.ttl_medium = ttl_medium
        self.ttl_large = ttl_large
        self.medium_threshold_bytes = medium_threshold_bytes
        self.large_threshold_bytes = large_threshold_bytes
        self.max_size = max_size
        self.enabled = enabled
        # Held by callers across lookup + job creation
        self.lock = asyncio.Lock()

        # Statistics
        self.stats = {
            "hits": 0,
            "inflight_hits": 0,
            "misses": 0,
            "evictions": 0,
        }

    def __len__(self) -> int:
        return len(self._cache)

    def ttl_for_size(self, size_bytes: int) -> int:
        if size_bytes >= self.large_threshold_bytes:
            return self.ttl_large
        if size_bytes >= self.medium_threshold_bytes:
            return self.ttl_medium
        return self.ttl_small

    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Get the entry for a fingerprint if present and not expired.

        Returns:
            Entry (in-flight or completed) or None
        """
        if not self.enabled:
            return None

        entry = self._cache.get(key)
        if entry is None:
            self.stats["misses"] += 1
            return None

        if entry.is_expired():
            del self._cache[key]
            self.stats["misses"] += 1
            return None

        if entry.in_flight:
            self.stats["inflight_hits"] += 1
        else:
            self.stats["hits"] += 1
        logger.debug(f"Result cache hit (key: {key[:16]}..., job: {entry.job_id})")
        return entry.access()

    def register_inflight(self, key: str, job_id: str) -> None:
        """Record that `job_id` is producing the result for `key`."""
        if not self.enabled:
            return
        if len(self._cache) >= self.max_size and key not in self._cache:
            self._evict_oldest()
        self._cache[key] = CacheEntry(job_id=job_id, created_at=time.time())

    def mark_completed(
        self,
        key: str,
        job_id: str,
        temp_path: str,
        size_bytes: int,
        completed_at: Optional[datetime] = None,
    ) -> Optional[CacheEntry]:
        """Turn the job's in-flight entry into a completed one with a tiered TTL."""
        if not self.enabled:
            return None
        current = self._cache.get(key)
        if current is not None and current.job_id != job_id:
            # A newer job owns this fingerprint
            return None
        entry = CacheEntry(
            job_id=job_id,
            created_at=time.time(),
            ttl=self.ttl_for_size(size_bytes),
            temp_path=temp_path,
            size_bytes=size_bytes,
            completed_at=completed_at,
        )
        self._cache[key] = entry
        logger.debug(f"Export result cached (key: {key[:16]}..., ttl: {entry.ttl}s)")
        return entry

    def drop(self, key: str, job_id: Optional[str] = None) -> bool:
        """Remove an entry, optionally only if it still belongs to `job_id`."""
        entry = self._cache.get(key)
        if entry is None or (job_id is not None and entry.job_id != job_id):
            return False
        del self._cache[key]
        return True

    def _evict_oldest(self) -> None:
        """
        Evict the oldest completed entry.

        In-flight entries are never evicted; with none completed the map
        grows past `max_size` until running jobs finish.
        """
        completed = [k for k, e in self._cache.items() if not e.in_flight]
        if not completed:
            logger.debug(f"Result cache over capacity with {len(self._cache)} in-flight entries")
            return
        oldest_key = min(completed, key=lambda k: self._cache[k].created_at)
        del self._cache[oldest_key]
        self.stats["evictions"] += 1
        logger.debug("Evicted oldest cache entry")

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        expired_keys = [key for key, entry in self._cache.items() if entry.is_expired()]
        for key in expired_keys:
            del self._cache[key]

        if expired_keys:
            logger.info(f"Cleaned up {len(expired_keys)} expired cache entries")
        return len(expired_keys)

    def prune_missing_artifacts(self) -> int:
        """
        Remove completed entries whose artifact file no longer exists.

        Returns:
            Number of entries removed
        """
        missing = [
            key for key, entry in self._cache.items()
            if not entry.in_flight and (not entry.temp_path or not os.path.exists(entry.temp_path))
        ]
        for key in missing:
            del self._cache[key]

        if missing:
            logger.info(f"Removed {len(missing)} cache entries with missing artifacts")
        return len(missing)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.stats["hits"] + self.stats["inflight_hits"] + self.stats["misses"]
        hit_rate = (
            (self.stats["hits"] + self.stats["inflight_hits"]) / total_requests
            if total_requests > 0 else 0.0
        )

        return {
            "enabled": self.enabled,
            "size": len(self._cache),
            "in_flight": sum(1 for e in self._cache.values() if e.in_flight),
            "max_size": self.max_size,
            "hits": self.stats["hits"],
            "inflight_hits": self.stats["inflight_hits"],
            "misses": self.stats["misses"],
            "evictions": self.stats["evictions"],
            "hit_rate": round(hit_rate, 3),
            "ttl_tiers": {
                "small": self.ttl_small,
                "medium": self.ttl_medium,
                "large": self.ttl_large,
            },
        }
