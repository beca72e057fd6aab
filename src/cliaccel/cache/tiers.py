"""Cache tier backends.

Each tier is a bounded key to :class:`~cliaccel.models.CacheEntry` map with
strict LRU eviction. Two backends are provided:

* :class:`MemoryTier` -- an :class:`~collections.OrderedDict` guarded by a
  lock; bounded by entry count and/or estimated bytes.
* :class:`DiskTier` -- a :class:`diskcache.Cache` directory; bounded by
  entry count (strict LRU through a process-local recency index) and by
  bytes (diskcache's own ``size_limit`` culling).

Tiers know nothing about promotion or write-through; that is the job of
:class:`~cliaccel.cache.store.CacheStore`. Storage failures in the disk tier
are raised as :class:`~cliaccel.exceptions.CacheIOError`.
"""

from __future__ import annotations

import pickle
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Optional

import diskcache

from cliaccel.exceptions import CacheIOError
from cliaccel.models import CacheEntry, Tier, TierConfig, TierStats

# Errors diskcache can surface for a broken directory or an unpicklable value.
_STORAGE_ERRORS = (
    OSError,
    sqlite3.Error,
    pickle.PickleError,
    EOFError,
    TypeError,
    AttributeError,
    ValueError,
    diskcache.Timeout,
)

_DEFAULT_DISK_BYTES = 1024 * 1024 * 1024


class CacheTier(ABC):
    """One layer of the cache hierarchy.

    Args:
        config: Capacity and admission settings for this tier.
    """

    kind: Tier

    def __init__(self, config: TierConfig) -> None:
        self.max_entries = config.max_entries
        self.max_bytes = config.max_bytes
        self.min_entry_size = config.min_entry_size
        self.hits = 0
        self.evictions = 0
        self._lock = threading.Lock()

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for *key* and mark it most recently used, or ``None``."""

    @abstractmethod
    def set(self, key: str, entry: CacheEntry) -> None:
        """Store *entry* under *key*, evicting least recently used entries if over capacity."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove *key*; return whether it was present."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Snapshot of stored keys, least recently used first."""

    @abstractmethod
    def evict_expired(self, now: float) -> int:
        """Drop every entry expired at *now*; return how many were dropped."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""

    @abstractmethod
    def __len__(self) -> int: ...

    def close(self) -> None:
        """Release backend resources."""

    def stats(self) -> TierStats:
        return TierStats(tier=self.kind, size=len(self), hits=self.hits, evictions=self.evictions)


class MemoryTier(CacheTier):
    """In-process LRU tier.

    Example::

        tier = MemoryTier(TierConfig(kind=Tier.MEMORY, max_entries=2))
        tier.set("a", entry_a)
        tier.set("b", entry_b)
        tier.get("a")            # "a" becomes most recently used
        tier.set("c", entry_c)   # evicts "b"
    """

    kind = Tier.MEMORY

    def __init__(self, config: TierConfig) -> None:
        super().__init__(config)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._bytes = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._bytes -= previous.size_estimate
            self._entries[key] = entry
            self._bytes += entry.size_estimate
            self._evict_overflow()

    def _evict_overflow(self) -> None:
        while self._entries and self._over_capacity():
            _, evicted = self._entries.popitem(last=False)
            self._bytes -= evicted.size_estimate
            self.evictions += 1

    def _over_capacity(self) -> bool:
        if self.max_entries is not None and len(self._entries) > self.max_entries:
            return True
        return self.max_bytes is not None and self._bytes > self.max_bytes

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._bytes -= entry.size_estimate
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def evict_expired(self, now: float) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._bytes -= self._entries.pop(key).size_estimate
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0

    def __len__(self) -> int:
        return len(self._entries)


class DiskTier(CacheTier):
    """Persistent tier backed by :class:`diskcache.Cache`.

    Entries are stored as plain dicts (``CacheEntry.model_dump()``) with a
    diskcache ``expire`` equal to the entry's lifetime
    (``expires_at - created_at``), so stale rows also disappear on
    diskcache's own culling. The expire is counted from the write, not from
    ``created_at``; freshness is still decided by :class:`CacheStore` against
    ``expires_at`` on every read. Recency is tracked in a process-local index
    seeded from the directory on open; after a restart, existing entries
    start in the directory's key order.

    Args:
        config: Tier settings. ``directory`` must be set.

    Raises:
        CacheIOError: If the cache directory cannot be opened.
    """

    kind = Tier.DISK

    def __init__(self, config: TierConfig) -> None:
        super().__init__(config)
        if not config.directory:
            raise CacheIOError("Disk tier requires a directory")
        self.directory = Path(config.directory)
        try:
            self._cache = diskcache.Cache(
                str(self.directory),
                size_limit=config.max_bytes or _DEFAULT_DISK_BYTES,
                eviction_policy="least-recently-used",
            )
            self._order: OrderedDict[str, None] = OrderedDict.fromkeys(
                k for k in self._cache.iterkeys() if isinstance(k, str)
            )
        except _STORAGE_ERRORS as exc:
            raise CacheIOError(f"Cannot open disk cache at {self.directory}: {exc}") from exc

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            try:
                raw = self._cache.get(key, default=None, retry=True)
            except _STORAGE_ERRORS as exc:
                self._forget(key)
                raise CacheIOError(f"Unreadable disk cache entry {key}: {exc}") from exc
            if raw is None:
                self._order.pop(key, None)
                return None
            try:
                entry = CacheEntry.model_validate(raw)
            except ValueError as exc:
                self._forget(key)
                raise CacheIOError(f"Corrupt disk cache entry {key}: {exc}") from exc
            self._order[key] = None
            self._order.move_to_end(key)
            return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        expire = None
        if entry.expires_at is not None:
            expire = max(entry.expires_at - entry.created_at, 0.001)
        with self._lock:
            try:
                self._cache.set(key, entry.model_dump(), expire=expire, retry=True)
            except _STORAGE_ERRORS as exc:
                raise CacheIOError(f"Cannot write disk cache entry {key}: {exc}") from exc
            self._order[key] = None
            self._order.move_to_end(key)
            self._evict_overflow()

    def _evict_overflow(self) -> None:
        if self.max_entries is None:
            return
        while len(self._order) > self.max_entries:
            oldest, _ = self._order.popitem(last=False)
            try:
                self._cache.delete(oldest, retry=True)
            except _STORAGE_ERRORS as exc:
                raise CacheIOError(f"Cannot evict disk cache entry {oldest}: {exc}") from exc
            self.evictions += 1

    def _forget(self, key: str) -> None:
        self._order.pop(key, None)
        try:
            self._cache.delete(key, retry=True)
        except _STORAGE_ERRORS:
            pass

    def delete(self, key: str) -> bool:
        with self._lock:
            self._order.pop(key, None)
            try:
                return bool(self._cache.delete(key, retry=True))
            except _STORAGE_ERRORS as exc:
                raise CacheIOError(f"Cannot delete disk cache entry {key}: {exc}") from exc

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._order)

    def evict_expired(self, now: float) -> int:
        # diskcache tracks expiry in wall-clock time on its own.
        with self._lock:
            try:
                removed = self._cache.expire(now=time.time(), retry=True)
            except _STORAGE_ERRORS as exc:
                raise CacheIOError(f"Cannot sweep disk cache: {exc}") from exc
            for key in [k for k in self._order if k not in self._cache]:
                del self._order[key]
            return removed

    def clear(self) -> None:
        with self._lock:
            try:
                self._cache.clear(retry=True)
            except _STORAGE_ERRORS as exc:
                raise CacheIOError(f"Cannot clear disk cache: {exc}") from exc
            self._order.clear()

    def __len__(self) -> int:
        return len(self._order)

    def close(self) -> None:
        self._cache.close()


def build_tier(config: TierConfig) -> CacheTier:
    """Instantiate the backend named by ``config.kind``."""
    if config.kind == Tier.MEMORY:
        return MemoryTier(config)
    return DiskTier(config)
