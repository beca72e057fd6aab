"""Paginated operations as bounded-memory async streams.

A :class:`Stream` walks a paginated remote operation page by page through
the :class:`~cliaccel.engine.core.Engine` (so pages are cached, coalesced and
concurrency-gated like any other request) and hands items to the consumer
one at a time::

    async with engine.stream(request, PageSpec(items_key="Reservations")) as stream:
        async for reservation in stream:
            ...

A background producer fetches pages while the buffer holds fewer than
``high_water`` items. Once the mark is reached it pauses until the consumer
has drained the buffer below ``low_water`` (or emptied it, which covers
``low_water=0``), so at most ``ceil(high_water / page_size) + 1`` pages are ever
buffered.

Leaving the stream early (``aclose``, ``max_items``, or the caller's
:class:`~cliaccel.engine.cancel.CancelToken`) drops the buffer and starts no
further fetch. A fetch waiting for a permit is abandoned; one already
dispatched completes and its page is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional

from cliaccel.engine.cancel import CancelToken
from cliaccel.exceptions import CliaccelError, ConfigError, ItemError, RemoteError, Timeout
from cliaccel.models import PageSpec, Request, StreamStats

if TYPE_CHECKING:
    from cliaccel.engine.core import Engine

logger = logging.getLogger(__name__)

Transform = Callable[[Any], Any]
ItemErrorPolicy = Literal["raise", "skip"]

_SKIP = object()


@dataclass
class StreamCursor:
    """Position of a stream in the remote sequence."""

    next_token: Optional[str] = None
    exhausted: bool = False
    buffer: deque = field(default_factory=deque)
    pages_fetched: int = 0


def dig(payload: Any, path: str) -> Any:
    """Follow a dotted *path* through nested mappings; ``None`` when absent."""
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


class Stream:
    """Lazy, non-restartable async sequence over a paginated request.

    Args:
        engine: Executes the page requests.
        request: The first-page request; later pages add the continuation
            token under ``pages.input_token``.
        pages: Where items and tokens live in a page.
        high_water: Buffer size at which fetching pauses.
        low_water: Buffer size below which fetching resumes; an empty
            buffer always resumes it.
        pull_timeout: Seconds a pull may wait for the next item.
        cancel: Caller cancellation; ends the stream with :class:`Cancelled`.
        transform: Applied to every item before it is yielded.
        on_item_error: ``"raise"`` raises :class:`ItemError` for an item whose
            transform failed and keeps the stream open; ``"skip"`` logs and
            drops the item.

    Raises:
        ConfigError: If ``low_water >= high_water``.
    """

    def __init__(
        self,
        engine: Engine,
        request: Request,
        pages: PageSpec,
        high_water: int = 100,
        low_water: int = 25,
        pull_timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        transform: Optional[Transform] = None,
        on_item_error: ItemErrorPolicy = "raise",
    ) -> None:
        if not 0 <= low_water < high_water:
            raise ConfigError(
                f"Stream watermarks must satisfy 0 <= low_water < high_water, "
                f"got {low_water} / {high_water}"
            )
        self._engine = engine
        self._request = request
        self._pages = pages
        self._high_water = high_water
        self._low_water = low_water
        self._pull_timeout = pull_timeout
        self._cancel = cancel
        self._transform = transform
        self._on_item_error = on_item_error

        self.cursor = StreamCursor()
        self.stats = StreamStats()
        self._failure: Optional[BaseException] = None
        self._closed = False
        self._finished = False
        self._producer: Optional[asyncio.Task] = None
        self._fetch_cancel = CancelToken()
        self._items_ready = asyncio.Event()
        self._space = asyncio.Event()
        self._space.set()
        if cancel is not None:
            cancel.add_callback(self._on_cancel)

    @property
    def request(self) -> Request:
        return self._request

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> Stream:
        return self

    async def __aenter__(self) -> Stream:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def __anext__(self) -> Any:
        while True:
            if self._closed:
                if not self._finished and self._cancel is not None and self._cancel.cancelled:
                    self._finished = True
                    raise self._cancel.error(self._request)
                raise StopAsyncIteration
            if self._pages.max_items is not None and self.stats.items_yielded >= self._pages.max_items:
                await self.aclose()
                raise StopAsyncIteration
            if self._producer is None:
                self._producer = asyncio.ensure_future(self._produce())

            if self.cursor.buffer:
                item = self.cursor.buffer.popleft()
                if not self.cursor.buffer or len(self.cursor.buffer) < self._low_water:
                    self._space.set()
                value = self._apply(item)
                if value is _SKIP:
                    continue
                self.stats.items_yielded += 1
                return value

            if self._failure is not None:
                failure, self._failure = self._failure, None
                self._finished = True
                await self.aclose()
                raise failure
            if self.cursor.exhausted:
                self._finished = True
                await self.aclose()
                raise StopAsyncIteration

            self._space.set()
            self._items_ready.clear()
            await self._wait_for_items()

    async def _wait_for_items(self) -> None:
        try:
            if self._pull_timeout is None:
                await self._items_ready.wait()
            else:
                await asyncio.wait_for(self._items_ready.wait(), self._pull_timeout)
        except asyncio.TimeoutError:
            self._finished = True
            await self.aclose()
            raise Timeout(
                f"No item from {self._request.target} within {self._pull_timeout}s",
                request=self._request,
            ) from None

    def _apply(self, item: Any) -> Any:
        if self._transform is None:
            return item
        try:
            return self._transform(item)
        except Exception as exc:
            if self._on_item_error == "skip":
                logger.warning("Skipping stream item from %s: %s", self._request.target, exc)
                return _SKIP
            raise ItemError(
                f"Cannot transform item from {self._request.target}: {exc}",
                item=item,
                request=self._request,
            ) from exc

    async def _produce(self) -> None:
        try:
            while not self._closed and not self.cursor.exhausted:
                await self._space.wait()
                if self._closed:
                    break
                page_request = self._page_request()
                try:
                    page = await self._engine.execute(page_request, cancel=self._fetch_cancel)
                except Exception as exc:
                    if self._closed:
                        break
                    if isinstance(exc, CliaccelError) and exc.request is None:
                        exc.request = page_request
                    self._failure = exc
                    break
                if self._closed:
                    break
                try:
                    self._accept(page, page_request)
                except RemoteError as exc:
                    self._failure = exc
                    break
                if len(self.cursor.buffer) >= self._high_water:
                    self._space.clear()
                self._items_ready.set()
        finally:
            self._items_ready.set()

    def _page_request(self) -> Request:
        extra: dict[str, Any] = {}
        if self.cursor.next_token:
            extra[self._pages.input_token] = self.cursor.next_token
        if self._pages.page_size_param and self._pages.page_size:
            extra[self._pages.page_size_param] = self._pages.page_size
        return self._request.with_parameters(extra) if extra else self._request

    def _accept(self, page: Any, page_request: Request) -> None:
        items = dig(page, self._pages.items_key)
        if items is None:
            items = []
        elif not isinstance(items, list):
            raise RemoteError(
                f"Page field '{self._pages.items_key}' is not a list",
                code="MalformedPage",
                request=page_request,
            )
        token = dig(page, self._pages.output_token)
        previous = self.cursor.next_token
        self.cursor.buffer.extend(items)
        self.cursor.pages_fetched += 1
        self.stats.pages_fetched = self.cursor.pages_fetched
        self.stats.max_buffered = max(self.stats.max_buffered, len(self.cursor.buffer))
        if not token:
            self.cursor.exhausted = True
        elif token == previous:
            logger.warning("%s returned the same continuation token twice; stopping", self._request.target)
            self.cursor.exhausted = True
        self.cursor.next_token = token or None

    def _on_cancel(self) -> None:
        self._shutdown()

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.cursor.buffer.clear()
        self._fetch_cancel.cancel("Stream closed")
        self._space.set()
        self._items_ready.set()
        if self._cancel is not None:
            self._cancel.remove_callback(self._on_cancel)

    async def aclose(self) -> None:
        """Stop the stream and release its buffer. Idempotent."""
        self._shutdown()

    async def collect(self) -> list[Any]:
        """Drain the remaining items into a list (mind the memory bound you give up)."""
        return [item async for item in self]
