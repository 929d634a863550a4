"""
Response caching for the fetch client.

This module handles:
- In-memory TTL cache with LRU eviction
- Stale reads for fallback after failed fetches
- Optional disk persistence of entries as JSON
- Cache cleanup and metrics
"""

import os
import json
import time
import hashlib
import aiofiles
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Dict, List
from dataclasses import dataclass
from collections import OrderedDict

from .config import Config
from .monitor.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached provider payload."""
    key: str
    payload: Any
    fetched_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        return self.age(now) < self.ttl


class CacheManager:
    """
    Manages cached provider payloads.

    Features:
    - Freshness checks against a per-entry TTL
    - Last payload kept regardless of age for fallback
    - In-memory LRU eviction beyond ``max_entries``
    - Disk persistence when ``cache_dir`` is set
    """

    def __init__(
        self,
        max_entries: int = 500,
        max_stale_age: float = 86400.0,
        cache_dir: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time
    ):
        self.max_entries = max_entries
        self.max_stale_age = max_stale_age
        self.cache_dir = cache_dir
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.clock = clock

        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)
            self.cache_index_file = os.path.join(cache_dir, "cache_index.json")
        else:
            self.cache_index_file = None

        # Performance tracking
        self.hits = 0
        self.misses = 0
        self.stale_reads = 0
        self.evictions = 0

        logger.info(f"Initialized CacheManager (persistence: {cache_dir or 'disabled'})")

    @classmethod
    def from_config(cls, config: Config, metrics: Optional[MetricsCollector] = None) -> 'CacheManager':
        return cls(
            max_entries=config.cache.max_entries,
            max_stale_age=config.cache.max_stale_age,
            cache_dir=config.cache.cache_dir,
            metrics=metrics,
        )

    def _get_cache_path(self, key: str) -> Path:
        """Get file path for a cache key."""
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return Path(self.cache_dir) / f"{digest}.json"

    def _touch(self, key: str):
        self.entries.move_to_end(key)

    def _evict_if_needed(self):
        """Evict least recently used entries beyond capacity."""
        while len(self.entries) > self.max_entries:
            key, _ = self.entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Evicted cache entry {key}")

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Entry for ``key`` regardless of age, without touching counters."""
        return self.entries.get(key)

    def get_fresh(self, key: str) -> Optional[Any]:
        """
        Get a payload that is still within its TTL.

        Args:
            key: Cache key

        Returns:
            Cached payload or None when missing or expired
        """
        entry = self.entries.get(key)
        if entry is not None and entry.is_fresh(self.clock()):
            self._touch(key)
            self.hits += 1
            self.metrics.record_cache_hit(key)
            logger.debug(f"Cache hit for {key}, age {entry.age(self.clock()):.1f}s")
            return entry.payload

        self.misses += 1
        self.metrics.record_cache_miss(key)
        return None

    def get_stale(self, key: str) -> Optional[Any]:
        """Last stored payload for ``key`` whatever its age."""
        entry = self.entries.get(key)
        if entry is None:
            return None
        self._touch(key)
        self.stale_reads += 1
        return entry.payload

    async def set(self, key: str, payload: Any, ttl: float):
        """
        Store a payload, replacing any previous entry.

        Args:
            key: Cache key
            payload: JSON-compatible payload
            ttl: Time to live in seconds
        """
        entry = CacheEntry(key=key, payload=payload, fetched_at=self.clock(), ttl=ttl)
        self.entries[key] = entry
        self._touch(key)
        self._evict_if_needed()

        if self.cache_dir:
            await self._save_entry(entry)

    async def _save_entry(self, entry: CacheEntry):
        try:
            file_path = self._get_cache_path(entry.key)
            async with aiofiles.open(file_path, 'w') as f:
                await f.write(json.dumps({
                    "key": entry.key,
                    "payload": entry.payload,
                    "fetched_at": entry.fetched_at,
                    "ttl": entry.ttl,
                }))
            await self._save_cache_index()
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error saving cache entry {entry.key}: {str(e)}")

    async def _save_cache_index(self):
        """Save cache index to disk."""
        index = {key: str(self._get_cache_path(key)) for key in self.entries}
        async with aiofiles.open(self.cache_index_file, 'w') as f:
            await f.write(json.dumps(index))

    async def load(self) -> int:
        """
        Load persisted entries from ``cache_dir``.

        Returns:
            Number of entries restored
        """
        if not self.cache_index_file or not os.path.exists(self.cache_index_file):
            return 0

        try:
            async with aiofiles.open(self.cache_index_file, 'r') as f:
                index = json.loads(await f.read())
        except (OSError, ValueError) as e:
            logger.error(f"Error loading cache index: {str(e)}")
            return 0

        restored = 0
        for key, path in index.items():
            try:
                async with aiofiles.open(path, 'r') as f:
                    data = json.loads(await f.read())
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable cache file for {key}: {str(e)}")
                continue
            self.entries[key] = CacheEntry(
                key=data["key"],
                payload=data["payload"],
                fetched_at=data["fetched_at"],
                ttl=data["ttl"],
            )
            restored += 1

        self._evict_if_needed()
        logger.info(f"Restored {restored} cache entries from {self.cache_dir}")
        return restored

    async def delete(self, key: str):
        """Delete item from cache."""
        self.entries.pop(key, None)

        if self.cache_dir:
            file_path = self._get_cache_path(key)
            try:
                if file_path.exists():
                    file_path.unlink()
                await self._save_cache_index()
            except OSError as e:
                logger.error(f"Error deleting cache file: {str(e)}")

    async def clear(self):
        """Clear all cache."""
        keys = list(self.entries)
        for key in keys:
            await self.delete(key)
        logger.info("Cleared all cache")

    async def cleanup_expired(self) -> List[str]:
        """Drop entries older than ``max_stale_age``; returns removed keys."""
        now = self.clock()
        expired_keys = [
            key for key, entry in self.entries.items()
            if entry.age(now) > self.max_stale_age
        ]

        for key in expired_keys:
            await self.delete(key)

        logger.info(f"Cleaned up {len(expired_keys)} expired cache entries")
        return expired_keys

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def get_metrics(self) -> Dict[str, Any]:
        """Get cache performance metrics."""
        total_requests = self.hits + self.misses
        hit_rate = (self.hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": len(self.entries),
            "capacity": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "stale_reads": self.stale_reads,
            "hit_rate": hit_rate,
            "evictions": self.evictions
        }
