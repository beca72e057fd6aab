"""Run commands -- execute requests from a JSON file through the engine.

Provides two commands registered directly on the root app:

* ``cliaccel exec FILE`` -- run one request, or a batch when the file holds
  a JSON array.
* ``cliaccel paginate FILE --items-key KEY`` -- walk a paginated operation
  and print every item as one JSON document per line.

A request file holds one object (or an array of objects) shaped like
:class:`~cliaccel.models.Request`::

    {"target": "ec2:describe-instances",
     "parameters": {"Filters": [{"Name": "tag:env", "Values": ["prod"]}]},
     "priority": 1}

``FILE`` may be ``-`` to read from stdin.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError

from cliaccel.exceptions import CliaccelError, InvalidUsageError
from cliaccel.models import EngineConfig, PageSpec, Request, Result
from cliaccel.output import debug, error, format_response, info, print_json_line, warning


def load_requests(source: str) -> tuple[list[Request], bool]:
    """Parse a request file.

    Args:
        source: Path to a JSON file, or ``-`` for stdin.

    Returns:
        A ``(requests, is_batch)`` tuple; *is_batch* is ``True`` when the
        file held a JSON array.

    Raises:
        InvalidUsageError: If the file is missing, is not JSON, or an entry
            is not a valid request.
    """
    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidUsageError(f"Cannot read request file {source}: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidUsageError(f"Request file {source} is not valid JSON: {exc}") from exc

    is_batch = isinstance(data, list)
    entries = data if is_batch else [data]
    requests: list[Request] = []
    for index, entry in enumerate(entries):
        try:
            requests.append(Request.model_validate(entry))
        except (ValidationError, ValueError) as exc:
            raise InvalidUsageError(f"Request #{index} in {source} is invalid: {exc}") from exc
    return requests, is_batch


def _resolve_engine_config(no_cache: bool, concurrency: Optional[int] = None) -> EngineConfig:
    from cliaccel.config import resolve_config

    overrides: dict[str, Any] = {}
    if no_cache:
        overrides["cache"] = {"enabled": False}
    if concurrency is not None:
        overrides["concurrency"] = {"initial_limit": concurrency, "max_limit": concurrency}
    return resolve_config(overrides)


def _describe(result: Result) -> dict[str, Any]:
    record: dict[str, Any] = {"target": str(result.request.target), "ok": result.ok}
    if result.ok:
        record["value"] = result.value
    else:
        record["error"] = str(result.error)
        code = getattr(result.error, "code", None)
        if code:
            record["code"] = code
    return record


def _exit_code(results: list[Result]) -> int:
    for result in results:
        if result.error is not None:
            return getattr(result.error, "exit_code", 1)
    return 0


async def _run_requests(
    config: EngineConfig,
    requests: list[Request],
    is_batch: bool,
    fail_fast: bool,
) -> list[Result]:
    from cliaccel.engine import Engine

    async with Engine.from_config(config) as engine:
        if is_batch:
            results = await engine.execute_batch(requests, fail_fast=fail_fast)
        else:
            results = [await engine.execute_result(requests[0])]
        debug(f"Engine snapshot: {engine.snapshot().model_dump_json()}")
    return results


def exec_command(
    file: str = typer.Argument(help="Request JSON file (object or array), or '-' for stdin."),
    fail_fast: bool = typer.Option(
        False, "--fail-fast", help="Stop starting new requests after the first failure."
    ),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the response cache."),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, help="Fixed concurrency limit for this run."
    ),
) -> None:
    """Execute one request, or a batch of requests, and print the results.

    A single request prints its value. A batch prints one record per
    request, in input order, with ``ok``, ``value`` or ``error``. The exit
    code is that of the first failed request (0 when all succeeded).

    Example::

        cliaccel exec describe-regions.json
        cliaccel --json exec batch.json --fail-fast
    """
    try:
        requests, is_batch = load_requests(file)
        config = _resolve_engine_config(no_cache, concurrency)
        results = asyncio.run(_run_requests(config, requests, is_batch, fail_fast))
    except CliaccelError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    if is_batch:
        format_response([_describe(result) for result in results])
        failed = sum(1 for result in results if not result.ok)
        if failed:
            warning(f"{failed} of {len(results)} requests failed")
    else:
        result = results[0]
        if result.ok:
            format_response(result.value)
        else:
            error(str(result.error))
    code = _exit_code(results)
    if code:
        raise typer.Exit(code=code)


async def _paginate(config: EngineConfig, request: Request, pages: PageSpec) -> int:
    from cliaccel.engine import Engine

    async with Engine.from_config(config) as engine:
        async with engine.stream(request, pages) as stream:
            async for item in stream:
                print_json_line(item)
        debug(
            f"Fetched {stream.stats.pages_fetched} pages, "
            f"max {stream.stats.max_buffered} items buffered"
        )
        return stream.stats.items_yielded


def paginate_command(
    file: str = typer.Argument(help="Request JSON file (a single object), or '-' for stdin."),
    items_key: str = typer.Option(
        ..., "--items-key", "-k", help="Dotted path to the item list in each page."
    ),
    limit: Optional[int] = typer.Option(None, "--limit", min=0, help="Stop after N items."),
    page_size: Optional[int] = typer.Option(
        None, "--page-size", min=1, help="Items per page (requires --page-size-param)."
    ),
    page_size_param: Optional[str] = typer.Option(
        None, "--page-size-param", help="Request parameter carrying the page size."
    ),
    input_token: str = typer.Option(
        "NextToken", "--input-token", help="Request parameter carrying the continuation token."
    ),
    output_token: str = typer.Option(
        "NextToken", "--output-token", help="Page field holding the next continuation token."
    ),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the response cache."),
) -> None:
    """Stream every item of a paginated operation, one JSON document per line.

    Example::

        cliaccel paginate instances.json --items-key Reservations --limit 50
    """
    try:
        requests, is_batch = load_requests(file)
        if is_batch:
            raise InvalidUsageError("paginate takes a single request, not an array")
        pages = PageSpec(
            items_key=items_key,
            input_token=input_token,
            output_token=output_token,
            page_size_param=page_size_param,
            page_size=page_size,
            max_items=limit,
        )
        config = _resolve_engine_config(no_cache)
        count = asyncio.run(_paginate(config, requests[0], pages))
    except CliaccelError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    info(f"{count} items")
