"""Tests for batch execution."""

from __future__ import annotations

import asyncio
import random

import pytest

from cliaccel.engine import CancelToken
from cliaccel.engine.batch import dispatch_order
from cliaccel.exceptions import Cancelled, InvalidUsageError, RemoteError
from cliaccel.models import CachePolicy, Request


def _echo_id(request: Request):
    return {"id": request.parameters["id"]}


def _requests(n: int, target: str = "ec2:describe-instances") -> list[Request]:
    return [
        Request(target=target, parameters={"id": i}, cache_policy=CachePolicy(cacheable=False))
        for i in range(n)
    ]


class TestOrdering:
    @pytest.mark.asyncio
    async def test_results_match_input_order(self, make_backend, make_engine) -> None:
        backend = make_backend(handler=_echo_id)
        delays = {i: random.uniform(0, 0.02) for i in range(20)}
        original = backend.__call__

        async def slow_then_answer(request: Request):
            await asyncio.sleep(delays[request.parameters["id"]])
            return await original(request)

        engine = make_engine(slow_then_answer)
        async with engine:
            results = await engine.execute_batch(_requests(20))
        assert [r.value["id"] for r in results] == list(range(20))
        assert all(r.request.parameters["id"] == i for i, r in enumerate(results))

    def test_dispatch_groups_by_service(self) -> None:
        requests = [
            Request(target="ec2:a"), Request(target="s3:b"),
            Request(target="ec2:c"), Request(target="iam:d"), Request(target="s3:e"),
        ]
        assert dispatch_order(requests) == [0, 2, 1, 4, 3]

    @pytest.mark.asyncio
    async def test_empty_batch(self, backend, make_engine) -> None:
        async with make_engine(backend) as engine:
            assert await engine.execute_batch([]) == []


class TestResilient:
    @pytest.mark.asyncio
    async def test_one_invalid_request_does_not_affect_siblings(
        self, make_backend, make_engine
    ) -> None:
        """Batch of 5 with #2 invalid: 4 successes and one RemoteError at index 2."""

        def handler(request: Request):
            if request.parameters["id"] == 2:
                raise RemoteError("bad filter", code="InvalidParameterValue")
            return {"id": request.parameters["id"]}

        backend = make_backend(handler=handler, delay=0.01)
        async with make_engine(backend) as engine:
            results = await engine.execute_batch(_requests(5))

        assert len(results) == 5
        assert [r.ok for r in results] == [True, True, False, True, True]
        error = results[2].error
        assert isinstance(error, RemoteError)
        assert error.code == "InvalidParameterValue"
        assert error.request == results[2].request
        assert len(backend.calls) == 5

    @pytest.mark.asyncio
    async def test_concurrency_override_bounds_parallelism(self, make_backend, make_engine) -> None:
        backend = make_backend(delay=0.02)
        async with make_engine(backend) as engine:
            await engine.execute_batch(_requests(10), concurrency_override=2)
        assert backend.peak <= 2

    @pytest.mark.asyncio
    async def test_invalid_override(self, backend, make_engine) -> None:
        async with make_engine(backend) as engine:
            with pytest.raises(InvalidUsageError):
                await engine.execute_batch(_requests(1), concurrency_override=0)


class TestFailFast:
    @pytest.mark.asyncio
    async def test_no_new_starts_after_failure(self, make_backend, make_engine) -> None:
        def handler(request: Request):
            if request.parameters["id"] == 0:
                raise RemoteError("denied", code="AccessDenied")
            return {"id": request.parameters["id"]}

        backend = make_backend(handler=handler, delay=0.01)
        async with make_engine(backend) as engine:
            results = await engine.execute_batch(
                _requests(6), concurrency_override=1, fail_fast=True
            )

        assert len(results) == 6
        assert isinstance(results[0].error, RemoteError)
        for result in results[1:]:
            assert isinstance(result.error, Cancelled)
            assert "#0" in str(result.error)
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_in_flight_requests_drain(self, make_backend, make_engine) -> None:
        def handler(request: Request):
            if request.parameters["id"] == 0:
                raise RemoteError("denied", code="AccessDenied")
            return {"id": request.parameters["id"]}

        async def staggered(request: Request):
            await asyncio.sleep(0 if request.parameters["id"] == 0 else 0.03)
            return handler(request)

        async with make_engine(staggered) as engine:
            results = await engine.execute_batch(
                _requests(5), concurrency_override=3, fail_fast=True
            )

        assert not results[0].ok
        assert results[1].ok and results[2].ok
        assert isinstance(results[3].error, Cancelled)
        assert isinstance(results[4].error, Cancelled)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_token_stops_admissions(self, make_backend, make_engine) -> None:
        backend = make_backend(delay=0.05)
        token = CancelToken()
        async with make_engine(backend) as engine:
            task = asyncio.ensure_future(
                engine.execute_batch(_requests(6), concurrency_override=2, cancel=token)
            )
            await asyncio.sleep(0.01)
            token.cancel("operator abort")
            results = await task
            await asyncio.sleep(0.06)

        assert len(results) == 6
        assert len(backend.calls) == 2
        assert all(isinstance(r.error, Cancelled) for r in results[2:])
        assert "operator abort" in str(results[5].error)
