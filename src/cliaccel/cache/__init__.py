"""Tiered response caching for cliaccel.

This package provides :class:`CacheStore`, a multi-tier (memory, then disk)
key to value store with TTL expiry, strict LRU eviction per tier, promotion
of slower-tier hits, and glob-pattern invalidation. Keys are request
fingerprints produced by :func:`fingerprint`; lifetimes come from
:class:`TtlPolicy`.

The store is owned by :class:`~cliaccel.engine.core.Engine` and configured
by the ``cache`` section of :class:`~cliaccel.models.EngineConfig`.
"""

from cliaccel.cache.fingerprint import fingerprint, normalize_parameters
from cliaccel.cache.policy import TtlPolicy
from cliaccel.cache.store import CacheStore, estimate_size
from cliaccel.cache.tiers import CacheTier, DiskTier, MemoryTier, build_tier

__all__ = [
    "CacheStore",
    "CacheTier",
    "DiskTier",
    "MemoryTier",
    "TtlPolicy",
    "build_tier",
    "estimate_size",
    "fingerprint",
    "normalize_parameters",
]
