"""JSON-over-HTTP gateway transport backed by :mod:`httpx`.

Each request becomes ``POST {base_url}/{service}/{operation}`` with the
parameters as the JSON body. Network errors, timeouts, HTTP 5xx and
throttling responses are retried with exponential backoff; remaining error
statuses are mapped to :class:`~cliaccel.exceptions.RemoteError` with the
gateway's error code and message.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from cliaccel.exceptions import CliaccelError, ConfigError, RemoteError, Timeout
from cliaccel.models import Request, TransportConfig
from cliaccel.transport.base import THROTTLING_CODES, Transport

logger = logging.getLogger(__name__)


class HttpTransport(Transport):
    """Asynchronous HTTP transport.

    Args:
        base_url: Gateway root, e.g. ``"https://cloud-gateway.internal"``.
        timeout: Per-request timeout in seconds.
        max_retries: Retries for 5xx, 429, throttling and network errors.
        retry_base_delay: Initial backoff delay in seconds.
        headers: Extra headers sent with every request.
        transport: Optional :class:`httpx.AsyncBaseTransport`, e.g. an
            :class:`httpx.MockTransport` in tests.

    Example::

        async with HttpTransport("https://gw.example.com") as transport:
            page = await transport.call(Request(target="ec2:describe-instances"))
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(max_retries=max_retries, retry_base_delay=retry_base_delay)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    @classmethod
    def from_config(cls, config: TransportConfig) -> HttpTransport:
        if not config.base_url:
            raise ConfigError("The http transport requires 'transport.base_url'")
        return cls(
            config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_base_delay=config.retry_base_delay,
        )

    async def _call_once(self, request: Request) -> Any:
        path = f"/{request.target.service}/{request.target.operation}"
        try:
            response = await self._client.post(path, json=request.parameters)
        except httpx.TimeoutException as exc:
            raise Timeout(f"{request.target} timed out: {exc}", request=request) from exc
        except (httpx.ConnectError, httpx.NetworkError) as exc:
            raise RemoteError(str(exc), code="ConnectionError", request=request) from exc

        if response.status_code >= 400:
            raise self._map_response_error(response, request)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text

    def _is_retryable(self, exc: CliaccelError) -> bool:
        if isinstance(exc, Timeout):
            return True
        if isinstance(exc, RemoteError):
            if exc.status is not None and (exc.status >= 500 or exc.status == 429):
                return True
            return exc.code in THROTTLING_CODES or exc.code == "ConnectionError"
        return False

    def _map_response_error(self, response: httpx.Response, request: Request) -> RemoteError:
        """Turn an error response into a :class:`RemoteError`."""
        status = response.status_code
        code: Optional[str] = None
        message = ""
        try:
            detail = response.json()
        except ValueError:
            detail = None
        if isinstance(detail, dict):
            error = detail.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                message = error.get("message") or ""
            else:
                code = detail.get("code") or detail.get("__type")
                message = detail.get("message") or detail.get("detail") or (error or "")
        elif response.text:
            message = response.text[:200]
        return RemoteError(message or f"HTTP {status}", code=code or f"HTTP{status}", request=request, status=status)

    async def aclose(self) -> None:
        await self._client.aclose()
