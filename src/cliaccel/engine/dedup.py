"""In-flight request coalescing.

Concurrent callers asking for the same fingerprint share one execution: the
first caller starts it as a task, later callers wait on that task, and every
waiter receives its own deep copy of the value or the same exception.
Waiters are released in registration order.

With a ``window`` greater than zero, a successful result also stays reusable
for ``window`` seconds after it completed. Callers mutating what they
receive never affect one another.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from fnmatch import fnmatchcase
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from cliaccel.engine.cancel import CancelToken
from cliaccel.exceptions import Cancelled
from cliaccel.models import DedupStats

logger = logging.getLogger(__name__)

Executor = Callable[[CancelToken], Awaitable[Any]]


class _Flight:
    """One shared execution and the number of callers waiting on it."""

    __slots__ = ("task", "token", "waiters")

    def __init__(self, task: asyncio.Future, token: CancelToken) -> None:
        self.task = task
        self.token = token
        self.waiters = 0


class Deduplicator:
    """Coalesce concurrent executions that share a fingerprint.

    The executor receives a :class:`CancelToken` that fires once every waiter
    has gone away (cancelled or timed out); executors pass it to
    :meth:`ConcurrencyController.acquire` so an abandoned execution never
    takes a permit. A call already dispatched to the remote side runs to
    completion.

    Args:
        window: Seconds a successful result is reused after completion.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(self, window: float = 0.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._window = window
        self._clock = clock
        self._inflight: dict[str, _Flight] = {}
        self._recent: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._executions = 0
        self._coalesced = 0

    @property
    def window(self) -> float:
        return self._window

    async def dedupe(
        self,
        key: str,
        executor: Executor,
        cancel: Optional[CancelToken] = None,
        reuse: bool = True,
    ) -> Any:
        """Run *executor* for *key* unless an identical execution is in flight.

        Args:
            key: Request fingerprint.
            executor: Zero-argument-plus-token coroutine factory; invoked only
                by the first caller.
            cancel: The caller's own token; firing it detaches only this caller.
            reuse: Allow a result completed within the window to be reused.

        Returns:
            The shared execution's value.

        Raises:
            Cancelled: If *cancel* fired while waiting.
            Exception: Whatever the shared execution raised.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()

        if reuse and self._window > 0:
            recent = self._recent.get(key)
            if recent is not None:
                completed_at, value = recent
                if self._clock() - completed_at <= self._window:
                    self._coalesced += 1
                    logger.debug("Reusing result for %s completed within window", key)
                    return copy.deepcopy(value)
                del self._recent[key]

        flight = self._inflight.get(key)
        if flight is None:
            token = CancelToken()
            task = asyncio.ensure_future(executor(token))
            flight = _Flight(task, token)
            self._inflight[key] = flight
            self._executions += 1
            task.add_done_callback(partial(self._finish, key, flight, reuse))
        else:
            self._coalesced += 1
            logger.debug("Coalescing request %s with in-flight execution", key)
        return await self._wait(flight, cancel)

    async def _wait(self, flight: _Flight, cancel: Optional[CancelToken]) -> Any:
        waiter = asyncio.get_running_loop().create_future()

        def _relay(task: asyncio.Future) -> None:
            if waiter.done():
                return
            if task.cancelled():
                waiter.set_exception(Cancelled("Shared execution was cancelled"))
            elif task.exception() is not None:
                waiter.set_exception(task.exception())
            else:
                try:
                    waiter.set_result(copy.deepcopy(task.result()))
                except Exception as exc:
                    waiter.set_exception(exc)

        def _on_cancel() -> None:
            if not waiter.done():
                waiter.set_exception(cancel.error())

        flight.waiters += 1
        flight.task.add_done_callback(_relay)
        if cancel is not None:
            cancel.add_callback(_on_cancel)
        try:
            return await waiter
        finally:
            flight.waiters -= 1
            flight.task.remove_done_callback(_relay)
            if cancel is not None:
                cancel.remove_callback(_on_cancel)
            if flight.waiters == 0 and not flight.task.done():
                flight.token.cancel("All callers left the shared execution")

    def _finish(self, key: str, flight: _Flight, reuse: bool, task: asyncio.Future) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]
        if task.cancelled():
            return
        # Mark the exception retrieved even when every waiter already left.
        if task.exception() is not None:
            return
        if reuse and self._window > 0 and not flight.token.cancelled:
            now = self._clock()
            self._recent[key] = (now, task.result())
            self._recent.move_to_end(key)
            self._prune(now)

    def _prune(self, now: float) -> None:
        while self._recent:
            key, (completed_at, _) = next(iter(self._recent.items()))
            if now - completed_at <= self._window:
                break
            del self._recent[key]

    def invalidate(self, pattern: str) -> int:
        """Forget window results whose fingerprint matches *pattern*."""
        stale = [k for k in self._recent if fnmatchcase(k, pattern)]
        for key in stale:
            del self._recent[key]
        return len(stale)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight

    def stats(self) -> DedupStats:
        return DedupStats(
            coalesced_count=self._coalesced,
            executions=self._executions,
            inflight=len(self._inflight),
        )
