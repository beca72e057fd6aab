"""In-process transport wrapping a callable.

Lets an embedding application plug its own remote call (an SDK client, a
recorded fixture) into the engine without subclassing :class:`Transport`.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Union

from cliaccel.models import Request
from cliaccel.transport.base import Transport

CallFn = Callable[[Request], Union[Any, Awaitable[Any]]]


class FunctionTransport(Transport):
    """Call ``fn(request)`` for every request; coroutine functions are awaited.

    Failures raised by *fn* are not retried unless ``max_retries`` is set and
    they are :class:`~cliaccel.exceptions.RemoteError` throttling codes.
    """

    def __init__(self, fn: CallFn, max_retries: int = 0, retry_base_delay: float = 0.0) -> None:
        super().__init__(max_retries=max_retries, retry_base_delay=retry_base_delay)
        self._fn = fn

    async def _call_once(self, request: Request) -> Any:
        result = self._fn(request)
        if inspect.isawaitable(result):
            result = await result
        return result
