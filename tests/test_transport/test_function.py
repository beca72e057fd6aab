"""Tests for the in-process function transport."""

from __future__ import annotations

import pytest

from cliaccel.exceptions import RemoteError
from cliaccel.models import Request
from cliaccel.transport import FunctionTransport


class TestFunctionTransport:
    @pytest.mark.asyncio
    async def test_sync_callable(self) -> None:
        transport = FunctionTransport(lambda request: {"target": str(request.target)})
        assert await transport.call(Request(target="s3:list-buckets")) == {"target": "s3:list-buckets"}

    @pytest.mark.asyncio
    async def test_coroutine_function(self) -> None:
        async def fn(request: Request):
            return request.parameters["n"] * 2

        assert await FunctionTransport(fn).call(Request(target="x:y", parameters={"n": 21})) == 42

    @pytest.mark.asyncio
    async def test_no_retries_by_default(self) -> None:
        calls = []

        def fn(request: Request):
            calls.append(request)
            raise RemoteError("Rate exceeded", code="Throttling")

        with pytest.raises(RemoteError):
            await FunctionTransport(fn).call(Request(target="x:y"))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_opt_in_retries(self) -> None:
        outcomes = [RemoteError("Rate exceeded", code="Throttling"), "ok"]

        def fn(request: Request):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        transport = FunctionTransport(fn, max_retries=2)
        assert await transport.call(Request(target="x:y")) == "ok"
