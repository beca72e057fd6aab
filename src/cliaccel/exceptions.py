"""Exception hierarchy for cliaccel.

All exceptions inherit from :class:`CliaccelError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`cliaccel.exit_codes`
and an optional back-reference to the :class:`~cliaccel.models.Request` that
produced the failure. The operator CLI catches ``CliaccelError`` and exits
with the appropriate code.

Subclass hierarchy::

    CliaccelError (exit 1)
    +-- InvalidUsageError   (exit 2)
    +-- ConfigError         (exit 3)
    +-- RemoteError         (exit 5)
    +-- Timeout             (exit 6)
    +-- Cancelled           (exit 130)
    +-- CacheIOError        (exit 1, never leaves the cache store)
    +-- ItemError           (exit 1)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from cliaccel.exit_codes import (
    EXIT_CANCELLED,
    EXIT_CONFIG_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_REMOTE_ERROR,
    EXIT_TIMEOUT,
)

if TYPE_CHECKING:
    from cliaccel.models import Request


class CliaccelError(Exception):
    """Base exception for all cliaccel errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
        request: The request whose execution failed, when there is one.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        request: Optional[Request] = None,
    ):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code
        self.request = request


class InvalidUsageError(CliaccelError):
    """Raised for API misuse, e.g. releasing a permit twice or an unreadable request file."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(CliaccelError):
    """Raised for invalid policy or configuration (bad TTL table, limits out of order).

    Configuration is validated once when the engine is built, so this error
    is fatal at startup and never produced per request.
    """

    exit_code = EXIT_CONFIG_ERROR


class RemoteError(CliaccelError):
    """Raised when the underlying remote call failed.

    Carries the provider's own error ``code`` and ``message`` untouched so
    callers can branch on them (``"Throttling"``, ``"InvalidParameterValue"``).

    Args:
        message: The provider's error message.
        code: Provider-specific error code, or ``None`` when unknown.
        request: The originating request.
        status: Process exit status or HTTP status, when available.
    """

    exit_code = EXIT_REMOTE_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        request: Optional[Request] = None,
        status: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        text = f"{code}: {message}" if code else message
        super().__init__(text, request=request)


class Timeout(CliaccelError):
    """Raised when a remote call, a permit wait, or a stream pull exceeded its bound."""

    exit_code = EXIT_TIMEOUT


class Cancelled(CliaccelError):
    """Raised when the caller's :class:`~cliaccel.engine.cancel.CancelToken` fired.

    Also attached to batch entries that were never started because a
    fail-fast batch aborted.
    """

    exit_code = EXIT_CANCELLED


class CacheIOError(CliaccelError):
    """Raised by a cache tier when its storage fails.

    The :class:`~cliaccel.cache.store.CacheStore` always catches this,
    logs it, and falls back to cache-miss behaviour.
    """


class ItemError(CliaccelError):
    """Raised for a single stream item that failed its transform.

    Recoverable: the stream keeps going and the consumer may pull again.

    Args:
        message: Description of the failure.
        item: The raw item that could not be transformed.
    """

    def __init__(self, message: str, item: Any = None, request: Optional[Request] = None):
        super().__init__(message, request=request)
        self.item = item
