"""Tiered cache store: lookup with promotion, write-through, TTL and invalidation.

The store owns an ordered list of :class:`~cliaccel.cache.tiers.CacheTier`
instances (fastest first). Reads walk the tiers in order and promote a hit
from a slower tier into every faster tier; writes go through to the first
``write_through_depth`` tiers that accept the entry's size.

The cache is an optimisation, never a dependency for correctness: every
:class:`~cliaccel.exceptions.CacheIOError` raised by a tier is logged and
treated as a miss (reads) or a skipped tier (writes).
"""

from __future__ import annotations

import copy
import json
import logging
import sys
import threading
import time
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Any, Callable, Optional

from cliaccel.cache.tiers import CacheTier, build_tier
from cliaccel.exceptions import CacheIOError
from cliaccel.models import CacheConfig, CacheEntry, CacheStats, Tier

logger = logging.getLogger(__name__)


def estimate_size(value: Any) -> int:
    """Rough size of *value* in bytes, based on its compact JSON encoding."""
    try:
        return len(json.dumps(value, default=str, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError):
        return sys.getsizeof(value)


class CacheStore:
    """Multi-tier cache keyed by request fingerprint.

    Args:
        tiers: Tier backends ordered fastest first.
        write_through_depth: How many tiers :meth:`put` writes to; ``None``
            writes to all of them.
        clock: Wall-clock source in seconds; injectable for tests.

    Example::

        store = CacheStore([MemoryTier(TierConfig(kind=Tier.MEMORY, max_entries=100))])
        store.put("ec2:describe-regions:ab12", {"Regions": []}, ttl=60)
        entry = store.get("ec2:describe-regions:ab12")
    """

    def __init__(
        self,
        tiers: list[CacheTier],
        write_through_depth: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tiers = list(tiers)
        self._depth = len(self._tiers) if write_through_depth is None else write_through_depth
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_config(
        cls,
        config: CacheConfig,
        cache_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> CacheStore:
        """Build a store from configuration.

        Disk tiers without an explicit ``directory`` are placed under
        ``<cache_dir>/responses``. A disk tier that cannot be opened is
        logged and left out; the store keeps working with the rest.

        Args:
            config: Cache section of the engine configuration.
            cache_dir: Base directory for disk tiers, usually
                :func:`~cliaccel.config.get_cache_dir`.
            clock: Wall-clock source.
        """
        tiers: list[CacheTier] = []
        if config.enabled:
            for tier_config in config.tiers:
                if tier_config.kind == Tier.DISK and not tier_config.directory:
                    if cache_dir is None:
                        logger.debug("No cache directory configured, skipping disk tier")
                        continue
                    tier_config = tier_config.model_copy(
                        update={"directory": str(Path(cache_dir) / "responses")}
                    )
                try:
                    tiers.append(build_tier(tier_config))
                except CacheIOError as exc:
                    logger.warning("Disk cache tier disabled: %s", exc)
        return cls(tiers, write_through_depth=config.write_through_depth, clock=clock)

    @property
    def tiers(self) -> list[CacheTier]:
        return list(self._tiers)

    def get(self, key: str) -> Optional[CacheEntry]:
        """Look up *key* across the tiers.

        Expired entries found on the way are deleted. A hit in a slower tier
        is copied into every faster tier with its original timestamps.

        Returns:
            A copy of the entry (``tier`` names the tier that served it), or
            ``None`` on a miss.
        """
        now = self._clock()
        for index, tier in enumerate(self._tiers):
            try:
                entry = tier.get(key)
            except CacheIOError as exc:
                logger.warning("Cache read failed in %s tier: %s", tier.kind.value, exc)
                continue
            if entry is None:
                continue
            if entry.is_expired(now):
                self._safe_delete(tier, key)
                continue
            tier.hits += 1
            for faster in self._tiers[:index]:
                self._safe_set(faster, key, entry.model_copy(update={"tier": faster.kind}))
            with self._lock:
                self._hits += 1
            logger.debug("Cache hit for %s in %s tier", key, tier.kind.value)
            return entry.model_copy(update={"value": copy.deepcopy(entry.value), "tier": tier.kind})
        with self._lock:
            self._misses += 1
        return None

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> CacheEntry:
        """Store *value* under *key*.

        Args:
            key: Request fingerprint.
            value: Result payload; a deep copy is stored.
            ttl: Lifetime in seconds; ``None`` keeps the entry until evicted.

        Returns:
            The stored entry (as written to the fastest tier).
        """
        now = self._clock()
        entry = CacheEntry(
            value=copy.deepcopy(value),
            created_at=now,
            expires_at=None if ttl is None else now + ttl,
            size_estimate=estimate_size(value),
        )
        for tier in self._tiers[: self._depth]:
            if entry.size_estimate < tier.min_entry_size:
                continue
            self._safe_set(tier, key, entry.model_copy(update={"tier": tier.kind}))
        return entry

    def invalidate(self, pattern: str) -> int:
        """Remove every entry whose key matches the glob *pattern* from all tiers.

        Returns:
            The number of distinct keys removed.
        """
        removed: set[str] = set()
        for tier in self._tiers:
            try:
                keys = tier.keys()
            except CacheIOError as exc:
                logger.warning("Cannot list %s tier keys: %s", tier.kind.value, exc)
                continue
            for key in keys:
                if fnmatchcase(key, pattern) and self._safe_delete(tier, key):
                    removed.add(key)
        if removed:
            logger.debug("Invalidated %d cache entries matching %s", len(removed), pattern)
        return len(removed)

    def sweep(self) -> int:
        """Eagerly drop expired entries from every tier; return the count."""
        now = self._clock()
        total = 0
        for tier in self._tiers:
            try:
                total += tier.evict_expired(now)
            except CacheIOError as exc:
                logger.warning("Cache sweep failed in %s tier: %s", tier.kind.value, exc)
        return total

    def clear(self) -> None:
        """Remove all entries from every tier."""
        for tier in self._tiers:
            try:
                tier.clear()
            except CacheIOError as exc:
                logger.warning("Cannot clear %s tier: %s", tier.kind.value, exc)

    def stats(self) -> CacheStats:
        tiers = [tier.stats() for tier in self._tiers]
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=sum(t.evictions for t in tiers),
                size=sum(t.size for t in tiers),
                tiers=tiers,
            )

    def close(self) -> None:
        for tier in self._tiers:
            tier.close()

    def _safe_set(self, tier: CacheTier, key: str, entry: CacheEntry) -> None:
        try:
            tier.set(key, entry)
        except CacheIOError as exc:
            logger.warning("Cache write skipped for %s tier: %s", tier.kind.value, exc)

    def _safe_delete(self, tier: CacheTier, key: str) -> bool:
        try:
            return tier.delete(key)
        except CacheIOError as exc:
            logger.warning("Cache delete failed in %s tier: %s", tier.kind.value, exc)
            return False
