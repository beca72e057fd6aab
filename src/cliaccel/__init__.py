"""cliaccel -- a client-side acceleration layer for rate-limited control-plane APIs.

This package sits between callers that build API requests and the remote
service (usually reached through a provider CLI subprocess). It removes
redundant calls with a tiered response cache and in-flight request
coalescing, adapts the number of simultaneous calls to observed latency, and
turns paginated operations into bounded-memory async streams.

Typical use::

    from cliaccel import Engine, Request
    from cliaccel.transport import SubprocessTransport

    async with Engine(SubprocessTransport("aws")) as engine:
        value = await engine.execute(Request(target="ec2:describe-regions"))

Modules:
    models: Pydantic models for requests, results, snapshots and config.
    config: XDG-aware configuration loading and precedence resolution.
    exceptions: Exception hierarchy with exit-code mapping.
    cache: Tiered cache store (memory, disk) with TTL and LRU eviction.
    engine: Deduplicator, concurrency controller, batch and stream engines.
    transport: Subprocess, HTTP and in-process transports.
    app: Typer operator CLI.
"""

__version__ = "0.3.0"

from cliaccel.engine import Engine
from cliaccel.models import CachePolicy, EngineConfig, PageSpec, Request, Result, Target

__all__ = [
    "CachePolicy",
    "Engine",
    "EngineConfig",
    "PageSpec",
    "Request",
    "Result",
    "Target",
    "__version__",
]
