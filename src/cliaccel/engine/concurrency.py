"""Adaptive concurrency control.

:class:`ConcurrencyController` hands out :class:`Permit` objects, at most
``limit`` at a time. Callers that find no free permit are suspended (only
their own task) and resumed highest priority first, FIFO within a priority.

Every release may carry the observed call latency. Once ``sample_window``
samples have accumulated and the ``cooldown`` has passed since the previous
change, the controller compares their average against ``target_latency``:

* clearly faster (below ``target * (1 - increase_margin)``): ``limit += increase_step``
  up to ``max_limit``;
* slower than the target: ``limit = floor(limit * decrease_factor)`` down to
  ``min_limit``.

The sample buffer is emptied after each evaluation so one slow burst cannot
trigger several decreases in a row.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import math
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from statistics import fmean
from typing import AsyncIterator, Callable, Optional

from cliaccel.engine.cancel import CancelToken
from cliaccel.exceptions import ConfigError, InvalidUsageError, Timeout
from cliaccel.models import ConcurrencyConfig, ConcurrencyState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permit:
    """A token for one unit of concurrent execution."""

    id: int
    priority: int
    acquired_at: float


class ConcurrencyController:
    """Bound and adapt the number of simultaneous outbound calls.

    Args:
        config: Limits, target latency and damping settings.
        clock: Monotonic time source; injectable for tests.

    Raises:
        ConfigError: If ``min_limit <= initial_limit <= max_limit`` does not hold.

    Example::

        controller = ConcurrencyController(ConcurrencyConfig(initial_limit=4))
        async with controller.slot(priority=1):
            await transport.call(request)
    """

    def __init__(
        self,
        config: Optional[ConcurrencyConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or ConcurrencyConfig()
        if not config.min_limit <= config.initial_limit <= config.max_limit:
            raise ConfigError(
                "Concurrency limits must satisfy min_limit <= initial_limit <= max_limit, "
                f"got {config.min_limit} / {config.initial_limit} / {config.max_limit}"
            )
        self._config = config
        self._clock = clock
        self._limit = config.initial_limit
        self._inflight = 0
        self._active: set[int] = set()
        self._waiters: list[tuple[int, int, asyncio.Future, int]] = []
        self._seq = itertools.count()
        self._ids = itertools.count(1)
        self._samples: deque[float] = deque(maxlen=config.sample_window)
        self._last_adjust: Optional[float] = None
        self.adjustments = 0

    def current_limit(self) -> int:
        return self._limit

    @property
    def inflight_count(self) -> int:
        return self._inflight

    @property
    def waiting(self) -> int:
        return sum(1 for _, _, waiter, _ in self._waiters if not waiter.done())

    async def acquire(
        self,
        priority: int = 0,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Permit:
        """Obtain a permit, suspending the calling task while none is free.

        Args:
            priority: Higher values are served first among waiters.
            cancel: Wakes this waiter with :class:`Cancelled` when fired.
            timeout: Seconds to wait before giving up.

        Raises:
            Cancelled: If *cancel* fired before a permit was granted.
            Timeout: If *timeout* elapsed first.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        if self._inflight < self._limit and not self._queued():
            return self._grant(priority)

        waiter = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (-priority, next(self._seq), waiter, priority))

        def _on_cancel() -> None:
            if not waiter.done():
                waiter.set_exception(cancel.error())

        if cancel is not None:
            cancel.add_callback(_on_cancel)
        try:
            if timeout is None:
                return await waiter
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            raise Timeout(f"No concurrency permit available within {timeout}s") from None
        except BaseException:
            self._abandon(waiter)
            raise
        finally:
            if cancel is not None:
                cancel.remove_callback(_on_cancel)

    def release(self, permit: Permit, observed_latency: Optional[float] = None) -> None:
        """Return *permit*, optionally recording the call's latency in seconds.

        Raises:
            InvalidUsageError: If the permit is unknown or already released.
        """
        if permit.id not in self._active:
            raise InvalidUsageError(f"Permit {permit.id} is not held")
        self._active.remove(permit.id)
        self._inflight -= 1
        if observed_latency is not None:
            self._record(observed_latency)
        self._wake()

    @asynccontextmanager
    async def slot(
        self,
        priority: int = 0,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[Permit]:
        """Hold a permit for the duration of the block and record its latency.

        A block interrupted by task cancellation releases the permit without
        a latency sample.
        """
        permit = await self.acquire(priority=priority, cancel=cancel, timeout=timeout)
        started = self._clock()
        try:
            yield permit
        except asyncio.CancelledError:
            self.release(permit)
            raise
        except BaseException:
            self.release(permit, self._clock() - started)
            raise
        else:
            self.release(permit, self._clock() - started)

    def snapshot(self) -> ConcurrencyState:
        return ConcurrencyState(
            limit=self._limit,
            inflight_count=self._inflight,
            waiting=self.waiting,
            target_latency=self._config.target_latency,
            recent_latency_samples=list(self._samples),
        )

    def _grant(self, priority: int) -> Permit:
        permit = Permit(id=next(self._ids), priority=priority, acquired_at=self._clock())
        self._active.add(permit.id)
        self._inflight += 1
        return permit

    def _queued(self) -> bool:
        while self._waiters and self._waiters[0][2].done():
            heapq.heappop(self._waiters)
        return bool(self._waiters)

    def _wake(self) -> None:
        while self._waiters and self._inflight < self._limit:
            _, _, waiter, priority = heapq.heappop(self._waiters)
            if waiter.done():
                continue
            waiter.set_result(self._grant(priority))

    def _abandon(self, waiter: asyncio.Future) -> None:
        if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
            # Granted while the caller was leaving; hand it back.
            self.release(waiter.result())
            return
        if not waiter.done():
            waiter.cancel()
        self._wake()

    def _record(self, latency: float) -> None:
        self._samples.append(latency)
        if len(self._samples) < self._config.sample_window:
            return
        now = self._clock()
        if self._last_adjust is not None and now - self._last_adjust < self._config.cooldown:
            return

        config = self._config
        average = fmean(self._samples)
        self._samples.clear()
        self._last_adjust = now

        previous = self._limit
        if average < config.target_latency * (1 - config.increase_margin):
            self._limit = min(config.max_limit, previous + config.increase_step)
        elif average > config.target_latency:
            self._limit = max(config.min_limit, math.floor(previous * config.decrease_factor))
        if self._limit != previous:
            self.adjustments += 1
            logger.debug(
                "Concurrency limit %d -> %d (avg latency %.3fs, target %.3fs)",
                previous, self._limit, average, config.target_latency,
            )
