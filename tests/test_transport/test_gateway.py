"""Tests for the httpx gateway transport."""

from __future__ import annotations

import json

import httpx
import pytest

from cliaccel.exceptions import ConfigError, RemoteError, Timeout
from cliaccel.models import Request, TransportConfig
from cliaccel.transport import HttpTransport


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _transport(handler, max_retries: int = 0) -> HttpTransport:
    return HttpTransport(
        "https://gateway.example.com",
        max_retries=max_retries,
        retry_base_delay=0.0,
        transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# Successful calls
# ---------------------------------------------------------------------------


class TestCall:
    @pytest.mark.asyncio
    async def test_posts_parameters_to_operation_path(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"Reservations": []})

        async with _transport(handler) as transport:
            result = await transport.call(
                Request(target="ec2:describe-instances", parameters={"MaxResults": 5})
            )

        assert result == {"Reservations": []}
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/ec2/describe-instances"
        assert json.loads(seen[0].content) == {"MaxResults": 5}

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self) -> None:
        async with _transport(lambda request: httpx.Response(204)) as transport:
            assert await transport.call(Request(target="ec2:delete-tags")) == {}

    @pytest.mark.asyncio
    async def test_non_json_body_is_text(self) -> None:
        async with _transport(lambda request: httpx.Response(200, text="pong")) as transport:
            assert await transport.call(Request(target="sts:ping")) == "pong"


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_error_envelope(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"error": {"code": "InvalidParameterValue", "message": "bad filter"}},
            )

        request = Request(target="ec2:describe-instances")
        async with _transport(handler) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.call(request)

        assert exc_info.value.code == "InvalidParameterValue"
        assert exc_info.value.message == "bad filter"
        assert exc_info.value.status == 400
        assert exc_info.value.request == request

    @pytest.mark.asyncio
    async def test_flat_error_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"__type": "AccessDenied", "message": "no"})

        async with _transport(handler) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.call(Request(target="iam:list-users"))
        assert exc_info.value.code == "AccessDenied"

    @pytest.mark.asyncio
    async def test_status_only(self) -> None:
        async with _transport(lambda request: httpx.Response(404)) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.call(Request(target="s3:get-object"))
        assert exc_info.value.code == "HTTP404"

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"code": "ValidationError"})

        async with _transport(handler, max_retries=3) as transport:
            with pytest.raises(RemoteError):
                await transport.call(Request(target="ec2:describe-vpcs"))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        async with _transport(handler, max_retries=3) as transport:
            assert await transport.call(Request(target="ec2:describe-vpcs")) == {"ok": True}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_throttling_exhausts_retries(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(429, json={"code": "Throttling", "message": "Rate exceeded"})

        async with _transport(handler, max_retries=2) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.call(Request(target="ec2:describe-vpcs"))
        assert exc_info.value.code == "Throttling"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_connect_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _transport(handler) as transport:
            with pytest.raises(RemoteError) as exc_info:
                await transport.call(Request(target="ec2:describe-vpcs"))
        assert exc_info.value.code == "ConnectionError"

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _transport(handler) as transport:
            with pytest.raises(Timeout):
                await transport.call(Request(target="ec2:describe-vpcs"))


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestFromConfig:
    def test_requires_base_url(self) -> None:
        with pytest.raises(ConfigError):
            HttpTransport.from_config(TransportConfig(kind="http"))

    @pytest.mark.asyncio
    async def test_uses_config_values(self) -> None:
        transport = HttpTransport.from_config(
            TransportConfig(kind="http", base_url="https://gw.test", max_retries=1, retry_base_delay=0.5)
        )
        assert transport.max_retries == 1
        assert transport.retry_base_delay == 0.5
        await transport.aclose()
