"""Caller-owned cancellation signal.

A :class:`CancelToken` is handed to :meth:`Engine.execute`, batches and
streams. Firing it wakes every permit wait, deduplication wait and stream
pull registered on it with :class:`~cliaccel.exceptions.Cancelled`. Tokens
are bound to the event loop that uses them; call :meth:`cancel` from that
loop (``loop.call_soon_threadsafe(token.cancel)`` from other threads).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional

from cliaccel.exceptions import Cancelled

if TYPE_CHECKING:
    from cliaccel.models import Request


class CancelToken:
    """One-shot cancellation signal with synchronous callbacks.

    Example::

        token = CancelToken()
        task = asyncio.create_task(engine.execute_batch(requests, cancel=token))
        ...
        token.cancel("user pressed Ctrl-C")
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = "Cancelled by caller"
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Fire the token. Later calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        if reason:
            self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* when the token fires (immediately if it already has)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def error(self, request: Optional[Request] = None) -> Cancelled:
        """Build the :class:`Cancelled` error this token stands for."""
        return Cancelled(self._reason, request=request)

    def raise_if_cancelled(self, request: Optional[Request] = None) -> None:
        if self._cancelled:
            raise self.error(request)
