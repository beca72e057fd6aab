"""Request execution facade.

:class:`Engine` is the single entry point of the package. It owns a
:class:`~cliaccel.cache.store.CacheStore`, a
:class:`~cliaccel.engine.dedup.Deduplicator` and a
:class:`~cliaccel.engine.concurrency.ConcurrencyController`, and runs every
request through them::

    cache lookup -> in-flight coalescing -> concurrency permit
        -> transport call -> cache write -> invalidations

Bulk and paginated workloads are built on the same path by
:meth:`Engine.execute_batch` and :meth:`Engine.stream`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from cliaccel.cache.policy import TtlPolicy
from cliaccel.cache.store import CacheStore
from cliaccel.engine.batch import BatchExecutor
from cliaccel.engine.cancel import CancelToken
from cliaccel.engine.concurrency import ConcurrencyController
from cliaccel.engine.dedup import Deduplicator
from cliaccel.engine.stream import ItemErrorPolicy, Stream, Transform
from cliaccel.exceptions import CliaccelError
from cliaccel.hooks import EngineHooks, HookRunner
from cliaccel.models import DedupStats, EngineConfig, EngineSnapshot, PageSpec, Request, Result
from cliaccel.transport.base import Transport

logger = logging.getLogger(__name__)


class Engine:
    """Cache-, coalescing- and concurrency-aware executor for remote requests.

    Args:
        transport: Performs the remote calls.
        config: Engine configuration; defaults to :class:`EngineConfig()`.
        cache: A pre-built cache store. When omitted, one is built from
            ``config.cache``; disk tiers are only included when *cache_dir*
            is given.
        cache_dir: Base directory for disk tiers.
        hooks: Lifecycle observers.
        clock: Monotonic time source for deduplication windows and latency.

    Raises:
        ConfigError: If the TTL table or concurrency limits are invalid.

    Example::

        async with Engine(SubprocessTransport("aws")) as engine:
            regions = await engine.execute(Request(target="ec2:describe-regions"))
            results = await engine.execute_batch(requests, fail_fast=False)
            async for instance in engine.stream(request, PageSpec(items_key="Reservations")):
                ...
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[EngineConfig] = None,
        *,
        cache: Optional[CacheStore] = None,
        cache_dir: Optional[Path] = None,
        hooks: Optional[Iterable[EngineHooks]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self.transport = transport
        self.policy = TtlPolicy(self.config.cache.ttl)
        self.cache = cache if cache is not None else CacheStore.from_config(self.config.cache, cache_dir)
        self.concurrency = ConcurrencyController(self.config.concurrency, clock=clock)
        self.dedup: Optional[Deduplicator] = None
        if self.config.dedup.enabled:
            self.dedup = Deduplicator(window=self.config.dedup.window, clock=clock)
        self.hooks = HookRunner(hooks)
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        cache_dir: Optional[Path] = None,
        hooks: Optional[Iterable[EngineHooks]] = None,
    ) -> Engine:
        """Build an engine with the transport named in ``config.transport``.

        Disk tiers default to :func:`~cliaccel.config.get_cache_dir`.
        """
        from cliaccel.config import get_cache_dir
        from cliaccel.transport import build_transport

        return cls(
            build_transport(config.transport),
            config,
            cache_dir=cache_dir or get_cache_dir(),
            hooks=hooks,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> Engine:
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def start(self) -> None:
        """Start the periodic expiry sweep (requires a running event loop)."""
        if self._sweeper is None and self.cache.tiers:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def aclose(self) -> None:
        """Stop the sweep task and close the transport and the cache."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.transport.aclose()
        self.cache.close()

    async def _sweep_loop(self) -> None:
        interval = self.config.cache.sweep_interval
        while True:
            await asyncio.sleep(interval)
            removed = self.cache.sweep()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute(self, request: Request, cancel: Optional[CancelToken] = None) -> Any:
        """Execute *request* and return its value.

        Args:
            request: The request to run.
            cancel: Caller cancellation; wakes permit and coalescing waits.

        Raises:
            RemoteError: The remote call failed; ``error.request`` is set.
            Timeout: A permit wait or the remote call exceeded its bound.
            Cancelled: *cancel* fired first.
        """
        try:
            if cancel is not None:
                cancel.raise_if_cancelled(request)
            self.hooks.run_request(request)

            key = request.fingerprint
            ttl = self.policy.resolve(request)
            cacheable = ttl is not None and ttl > 0 and bool(self.cache.tiers)
            if not cacheable:
                ttl = None
            if cacheable:
                entry = self.cache.get(key)
                if entry is not None:
                    self.hooks.run_cache_hit(request, entry)
                    self.hooks.run_result(request, entry.value)
                    return entry.value

            if self.dedup is not None:
                value = await self.dedup.dedupe(
                    key,
                    lambda token: self._call_remote(request, key, ttl, token),
                    cancel=cancel,
                    reuse=request.cache_policy.cacheable
                    and not self.policy.is_mutating(request.target),
                )
            else:
                value = await self._call_remote(request, key, ttl, cancel)
        except CliaccelError as exc:
            if exc.request is None:
                exc.request = request
            self.hooks.run_error(request, exc)
            raise
        except Exception as exc:
            self.hooks.run_error(request, exc)
            raise
        self.hooks.run_result(request, value)
        return value

    async def _call_remote(
        self,
        request: Request,
        key: str,
        ttl: Optional[float],
        cancel: Optional[CancelToken],
    ) -> Any:
        async with self.concurrency.slot(
            priority=request.priority,
            cancel=cancel,
            timeout=self.config.concurrency.acquire_timeout,
        ):
            value = await self.transport.call(request)
        if cancel is not None and cancel.cancelled:
            logger.debug("Discarding result of abandoned request %s", key)
        elif ttl is not None:
            self.cache.put(key, value, ttl)
        for pattern in self.policy.invalidations(request):
            self.invalidate(pattern)
        return value

    async def execute_result(self, request: Request, cancel: Optional[CancelToken] = None) -> Result:
        """Like :meth:`execute`, but return a :class:`Result` instead of raising."""
        try:
            value = await self.execute(request, cancel=cancel)
        except Exception as exc:
            return Result(request=request, error=exc)
        return Result(request=request, value=value)

    async def execute_batch(
        self,
        requests: Iterable[Request],
        concurrency_override: Optional[int] = None,
        fail_fast: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> list[Result]:
        """Execute many requests; see :class:`~cliaccel.engine.batch.BatchExecutor`."""
        return await BatchExecutor(self).run(
            requests,
            concurrency_override=concurrency_override,
            fail_fast=fail_fast,
            cancel=cancel,
        )

    def stream(
        self,
        request: Request,
        pages: PageSpec,
        *,
        high_water: Optional[int] = None,
        low_water: Optional[int] = None,
        pull_timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        transform: Optional[Transform] = None,
        on_item_error: ItemErrorPolicy = "raise",
    ) -> Stream:
        """Return a lazy :class:`~cliaccel.engine.stream.Stream` over a paginated operation.

        Watermarks and the pull timeout default to ``config.stream``.
        """
        defaults = self.config.stream
        return Stream(
            self,
            request,
            pages,
            high_water=high_water if high_water is not None else defaults.high_water,
            low_water=low_water if low_water is not None else defaults.low_water,
            pull_timeout=pull_timeout if pull_timeout is not None else defaults.pull_timeout,
            cancel=cancel,
            transform=transform,
            on_item_error=on_item_error,
        )

    # ------------------------------------------------------------------ #
    # Maintenance and observability
    # ------------------------------------------------------------------ #

    def invalidate(self, pattern: str) -> int:
        """Drop cached results (and reusable coalesced results) matching *pattern*."""
        removed = self.cache.invalidate(pattern)
        if self.dedup is not None:
            self.dedup.invalidate(pattern)
        return removed

    def sweep(self) -> int:
        """Run one expiry sweep now."""
        return self.cache.sweep()

    def snapshot(self) -> EngineSnapshot:
        """Counters for a metrics collaborator."""
        return EngineSnapshot(
            cache=self.cache.stats(),
            concurrency=self.concurrency.snapshot(),
            dedup=self.dedup.stats() if self.dedup is not None else DedupStats(),
        )
