"""Engine lifecycle hooks for observers such as a telemetry collaborator.

This module provides two components:

* :class:`EngineHooks` -- a base class with no-op callbacks for each stage of
  a request: ``on_request``, ``on_cache_hit``, ``on_result``, ``on_error``.
  Subclass it and override what you need.
* :class:`HookRunner` -- calls the hooks of every registered observer in
  registration order.

Hooks observe; they cannot change requests or results. A hook that raises is
logged and skipped so that an observer can never break request execution.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from cliaccel.models import CacheEntry, Request

logger = logging.getLogger(__name__)


class EngineHooks:
    """Base class for engine observers."""

    def on_request(self, request: Request) -> None:
        """Called when :meth:`Engine.execute` receives *request*."""

    def on_cache_hit(self, request: Request, entry: CacheEntry) -> None:
        """Called when *request* was served from the cache."""

    def on_result(self, request: Request, value: Any) -> None:
        """Called when *request* produced a value (cached or remote)."""

    def on_error(self, request: Request, error: Exception) -> None:
        """Called when *request* failed."""


class HookRunner:
    """Executes hooks across all observers in registration order.

    Args:
        hooks: Ordered observers. The list is copied at construction.
    """

    def __init__(self, hooks: Optional[Iterable[EngineHooks]] = None) -> None:
        self._hooks = list(hooks or [])

    def add(self, hooks: EngineHooks) -> None:
        self._hooks.append(hooks)

    def run_request(self, request: Request) -> None:
        self._dispatch("on_request", request)

    def run_cache_hit(self, request: Request, entry: CacheEntry) -> None:
        self._dispatch("on_cache_hit", request, entry)

    def run_result(self, request: Request, value: Any) -> None:
        self._dispatch("on_result", request, value)

    def run_error(self, request: Request, error: Exception) -> None:
        self._dispatch("on_error", request, error)

    def _dispatch(self, name: str, *args: Any) -> None:
        for hooks in self._hooks:
            try:
                getattr(hooks, name)(*args)
            except Exception as exc:
                logger.warning("Hook %s.%s failed: %s", type(hooks).__name__, name, exc)
