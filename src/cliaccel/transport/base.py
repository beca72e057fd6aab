"""Transport interface and retry with exponential backoff.

A transport performs the actual remote call for one
:class:`~cliaccel.models.Request`. It is the engine's only external
collaborator: everything above it (cache, coalescing, concurrency) is
transport-agnostic.

:class:`Transport` implements the retry loop; subclasses implement a single
attempt in :meth:`Transport._call_once` and decide which failures are
transient in :meth:`Transport._is_retryable`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from cliaccel.exceptions import CliaccelError, RemoteError
from cliaccel.models import Request

logger = logging.getLogger(__name__)

# Provider error codes that mean "slow down", not "you are wrong".
THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "TooManyRequestsException",
        "SlowDown",
        "ProvisionedThroughputExceededException",
    }
)


class Transport(ABC):
    """Base class for remote call transports.

    Args:
        max_retries: Extra attempts after the first one for transient errors.
        retry_base_delay: Delay before the first retry; doubles every attempt
            (1 s, 2 s, 4 s, ... with the default).
    """

    def __init__(self, max_retries: int = 3, retry_base_delay: float = 1.0) -> None:
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def call(self, request: Request) -> Any:
        """Execute *request* remotely and return the decoded payload.

        Raises:
            RemoteError: The provider rejected the call (after retries, when transient).
            Timeout: The call did not finish within the transport's bound.
        """
        return await self._execute_with_retry(request)

    async def _execute_with_retry(self, request: Request) -> Any:
        for attempt in range(self.max_retries + 1):
            try:
                return await self._call_once(request)
            except CliaccelError as exc:
                if exc.request is None:
                    exc.request = request
                if attempt >= self.max_retries or not self._is_retryable(exc):
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                logger.debug(
                    "%s failed with %s, retrying in %.1fs (attempt %d/%d)",
                    request.target, exc, delay, attempt + 1, self.max_retries,
                )
                await asyncio.sleep(delay)
        raise RemoteError("Request failed after all retries", request=request)  # pragma: no cover

    @abstractmethod
    async def _call_once(self, request: Request) -> Any:
        """Perform one attempt."""

    def _is_retryable(self, exc: CliaccelError) -> bool:
        if isinstance(exc, RemoteError):
            return exc.code in THROTTLING_CODES
        return False

    async def aclose(self) -> None:
        """Release transport resources."""

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
