"""Batch execution with input-ordered, request-correlated results.

:class:`BatchExecutor` admits the requests of a batch a few at a time (the
concurrency override, or the controller's current limit re-read on every
admission), dispatching them grouped by service so calls to one service run
back to back. Whatever the completion order, the returned list has one
:class:`~cliaccel.models.Result` per input request, at the same index.

Failure modes:

* resilient (``fail_fast=False``): every request runs; errors are recorded
  per entry and never affect siblings.
* fail-fast (``fail_fast=True``): the first failure stops new admissions.
  Requests already started drain on their own; requests never started get a
  :class:`~cliaccel.exceptions.Cancelled` error naming the failed request.
  Results that already succeeded are kept.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Iterable, Optional

from cliaccel.engine.cancel import CancelToken
from cliaccel.exceptions import Cancelled, InvalidUsageError
from cliaccel.models import Request, Result

if TYPE_CHECKING:
    from cliaccel.engine.core import Engine

logger = logging.getLogger(__name__)


def dispatch_order(requests: list[Request]) -> list[int]:
    """Indices of *requests* grouped by service, services in first-seen order."""
    groups: dict[str, list[int]] = {}
    for index, request in enumerate(requests):
        groups.setdefault(request.target.service, []).append(index)
    return [index for indices in groups.values() for index in indices]


class BatchExecutor:
    """Fan a batch of requests out through an :class:`Engine`.

    Args:
        engine: The engine every request is executed through.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    async def run(
        self,
        requests: Iterable[Request],
        concurrency_override: Optional[int] = None,
        fail_fast: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> list[Result]:
        """Execute *requests* and return their results in input order.

        Args:
            requests: The batch.
            concurrency_override: Maximum number of batch requests started at
                once, instead of the controller's current limit.
            fail_fast: Stop starting new requests after the first failure.
            cancel: Stops new admissions and wakes waiting requests with
                :class:`Cancelled` when fired.

        Raises:
            InvalidUsageError: If *concurrency_override* is below 1.
        """
        if concurrency_override is not None and concurrency_override < 1:
            raise InvalidUsageError(
                f"concurrency_override must be >= 1, got {concurrency_override}"
            )
        batch = list(requests)
        results: list[Optional[Result]] = [None] * len(batch)
        pending = deque(dispatch_order(batch))
        running: dict[asyncio.Task, int] = {}
        failed: Optional[int] = None

        try:
            while pending or running:
                while pending and len(running) < self._admission(concurrency_override):
                    if failed is not None or (cancel is not None and cancel.cancelled):
                        break
                    index = pending.popleft()
                    task = asyncio.ensure_future(
                        self._engine.execute_result(batch[index], cancel=cancel)
                    )
                    running[task] = index
                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=running.__getitem__):
                    index = running.pop(task)
                    result = self._collect(task, batch[index])
                    results[index] = result
                    if not result.ok and fail_fast and failed is None:
                        failed = index
                        logger.debug(
                            "Batch aborting after failure of request #%d (%s); %d not started",
                            index, batch[index].target, len(pending),
                        )
        except asyncio.CancelledError:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        for index in pending:
            results[index] = Result(
                request=batch[index],
                error=self._not_started(batch, index, failed, cancel),
            )
        return [result for result in results if result is not None]

    def _admission(self, concurrency_override: Optional[int]) -> int:
        if concurrency_override is not None:
            return concurrency_override
        return self._engine.concurrency.current_limit()

    @staticmethod
    def _collect(task: asyncio.Task, request: Request) -> Result:
        if task.cancelled():
            return Result(request=request, error=Cancelled("Request task was cancelled", request=request))
        return task.result()

    @staticmethod
    def _not_started(
        batch: list[Request],
        index: int,
        failed: Optional[int],
        cancel: Optional[CancelToken],
    ) -> Cancelled:
        request = batch[index]
        if failed is not None:
            return Cancelled(
                f"Not started: batch aborted after request #{failed} "
                f"({batch[failed].target}) failed",
                request=request,
            )
        reason = cancel.reason if cancel is not None else "Cancelled by caller"
        return Cancelled(f"Not started: {reason}", request=request)
