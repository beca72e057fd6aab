"""Shared test fixtures for cliaccel.

Provides isolated config environments, output state management, fake
transports and engines, and a CLI runner. These fixtures are discovered by
pytest and available to all test modules without explicit imports.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from cliaccel.engine import Engine
from cliaccel.models import (
    CacheConfig,
    ConcurrencyConfig,
    EngineConfig,
    Request,
    Tier,
    TierConfig,
)
from cliaccel.output import OutputFormat, OutputManager, reset_output, set_output
from cliaccel.transport import FunctionTransport


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams and the
    test finishes, the cached references become stale. Resetting forces a
    fresh manager on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME, XDG_CACHE_HOME, and XDG_DATA_HOME to
    subdirectories of tmp_path, clears all CLIACCEL_* environment variables
    and changes the working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setattr("cliaccel.config._is_xdg_platform", lambda: True)

    for var in [
        "CLIACCEL_MAX_CONCURRENCY",
        "CLIACCEL_TARGET_LATENCY",
        "CLIACCEL_DEDUP_WINDOW",
        "CLIACCEL_NO_CACHE",
        "CLIACCEL_TRANSPORT",
        "CLIACCEL_EXECUTABLE",
        "CLIACCEL_BASE_URL",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager for the test."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


class RecordingBackend:
    """Fake remote side: counts calls per target and answers from a handler.

    Args:
        handler: ``handler(request) -> value``; may raise to simulate a
            remote failure. Defaults to echoing the parameters.
        delay: Seconds each call takes.
    """

    def __init__(
        self,
        handler: Callable[[Request], Any] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.handler = handler or (lambda request: {"echo": dict(request.parameters)})
        self.delay = delay
        self.calls: list[Request] = []
        self.active = 0
        self.peak = 0

    async def __call__(self, request: Request) -> Any:
        self.calls.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.handler(request)
        finally:
            self.active -= 1

    def count(self, target: str) -> int:
        return sum(1 for request in self.calls if str(request.target) == target)


def memory_only_config(**overrides: Any) -> EngineConfig:
    """EngineConfig with a single memory tier and a fast-adapting controller."""
    data: dict[str, Any] = {
        "cache": CacheConfig(tiers=[TierConfig(kind=Tier.MEMORY, max_entries=128)]),
        "concurrency": ConcurrencyConfig(initial_limit=4, max_limit=8, cooldown=0.0),
    }
    data.update(overrides)
    return EngineConfig(**data)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def make_backend() -> type[RecordingBackend]:
    return RecordingBackend


@pytest.fixture
def memory_config() -> Callable[..., EngineConfig]:
    return memory_only_config


@pytest.fixture
def make_engine() -> Callable[..., Engine]:
    """Factory building an Engine on a FunctionTransport over a backend."""

    def _make(backend: RecordingBackend, config: EngineConfig | None = None, **kwargs: Any) -> Engine:
        return Engine(FunctionTransport(backend), config or memory_only_config(), **kwargs)

    return _make


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
