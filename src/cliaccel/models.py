"""Canonical Pydantic models shared across all cliaccel modules.

This is the single source of truth for data shapes in the project. The models
fall into three groups:

**Request/response models** -- the values exchanged with collaborators:
    :class:`Target`, :class:`CachePolicy`, :class:`Request`, :class:`Result`,
    and :class:`PageSpec`.

**Engine state models** -- owned by the engine components and exposed as
read-only snapshots:
    :class:`Tier`, :class:`CacheEntry`, :class:`TierStats`,
    :class:`CacheStats`, :class:`ConcurrencyState`, :class:`DedupStats`,
    :class:`StreamStats`, and :class:`EngineSnapshot`.

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`TierConfig`, :class:`TtlConfig`, :class:`CacheConfig`,
    :class:`ConcurrencyConfig`, :class:`DedupConfig`, :class:`StreamConfig`,
    :class:`TransportConfig`, and :class:`EngineConfig`.

All models use Pydantic v2. Request-side models are frozen so a request can
be shared between the cache, the deduplicator and batch results without
defensive copies.
"""

from __future__ import annotations

import enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# --- Requests ---


class Target(BaseModel):
    """The remote operation a request addresses.

    The text form is ``service:operation`` (for example
    ``ec2:describe-instances``); it doubles as the readable prefix of a
    request fingerprint so cache entries can be invalidated per service or
    per operation with a glob pattern.
    """

    model_config = ConfigDict(frozen=True)

    service: str = Field(min_length=1)
    operation: str = Field(min_length=1)

    @classmethod
    def parse(cls, text: str) -> Target:
        """Build a target from its ``service:operation`` text form.

        Raises:
            ValueError: If *text* has no ``:`` separator.
        """
        service, sep, operation = text.partition(":")
        if not sep:
            raise ValueError(f"Target must look like 'service:operation', got {text!r}")
        return cls(service=service.strip(), operation=operation.strip())

    def __str__(self) -> str:
        return f"{self.service}:{self.operation}"


class CachePolicy(BaseModel):
    """Per-request caching instructions.

    Attributes:
        cacheable: When ``False`` the result is never read from or written to
            the cache (the request is still coalesced with in-flight twins).
        ttl: Seconds to keep the result, overriding the policy table.
        invalidates: Glob patterns over fingerprints removed from the cache
            after this request succeeds, e.g. ``["ec2:describe-*"]``.
    """

    model_config = ConfigDict(frozen=True)

    cacheable: bool = True
    ttl: Optional[float] = Field(default=None, ge=0)
    invalidates: tuple[str, ...] = ()


class Request(BaseModel):
    """An immutable request for one remote operation.

    Two requests with the same :attr:`fingerprint` are interchangeable for
    caching and deduplication, whatever order their parameters were given in.

    Example::

        Request(target="ec2:describe-instances",
                parameters={"Filters": [{"Name": "tag:env", "Values": ["prod"]}]})
    """

    model_config = ConfigDict(frozen=True)

    target: Target
    parameters: dict[str, Any] = Field(default_factory=dict)
    cache_policy: CachePolicy = Field(default_factory=CachePolicy)
    priority: int = Field(default=0, description="Higher values acquire permits first")

    @field_validator("target", mode="before")
    @classmethod
    def _coerce_target(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Target.parse(value)
        return value

    @property
    def fingerprint(self) -> str:
        """Deterministic identity used as the cache and deduplication key."""
        from cliaccel.cache.fingerprint import fingerprint

        return fingerprint(self.target, self.parameters)

    def with_parameters(self, extra: dict[str, Any]) -> Request:
        """Return a copy of this request with *extra* merged into its parameters."""
        return self.model_copy(update={"parameters": {**self.parameters, **extra}})


class Result(BaseModel):
    """Outcome of one request: a value or an error, plus the request itself.

    Batch executors return one ``Result`` per input request. Failures keep
    the originating :class:`Request` so callers can correlate them.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    request: Request
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        """``True`` when the request produced a value."""
        return self.error is None

    def unwrap(self) -> Any:
        """Return the value, or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value


class PageSpec(BaseModel):
    """How to walk a paginated operation.

    Keys are dotted paths into the page payload, e.g. ``"Reservations"`` or
    ``"Result.Items"``.
    """

    model_config = ConfigDict(frozen=True)

    items_key: str
    input_token: str = Field(default="NextToken", description="Request parameter carrying the token")
    output_token: str = Field(default="NextToken", description="Page field holding the next token")
    page_size_param: Optional[str] = None
    page_size: Optional[int] = Field(default=None, gt=0)
    max_items: Optional[int] = Field(default=None, ge=0)


# --- Engine state ---


class Tier(str, enum.Enum):
    """Cache tiers, fastest first."""

    MEMORY = "memory"
    DISK = "disk"


class CacheEntry(BaseModel):
    """A cached value with its expiry metadata.

    Owned by the cache store; callers only ever see copies.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Any
    created_at: float
    expires_at: Optional[float] = None
    tier: Tier = Tier.MEMORY
    size_estimate: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class TierStats(BaseModel):
    """Counters for one cache tier."""

    tier: Tier
    size: int = 0
    hits: int = 0
    evictions: int = 0


class CacheStats(BaseModel):
    """Aggregate cache counters reported by :meth:`CacheStore.stats`."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0
    tiers: list[TierStats] = Field(default_factory=list)


class ConcurrencyState(BaseModel):
    """Read-only view of the concurrency controller."""

    limit: int
    inflight_count: int
    waiting: int = 0
    target_latency: float
    recent_latency_samples: list[float] = Field(default_factory=list)


class DedupStats(BaseModel):
    """Counters reported by the deduplicator."""

    coalesced_count: int = 0
    executions: int = 0
    inflight: int = 0


class StreamStats(BaseModel):
    """Counters for one stream, useful to verify the memory bound."""

    pages_fetched: int = 0
    items_yielded: int = 0
    max_buffered: int = 0


class EngineSnapshot(BaseModel):
    """Observability snapshot handed to a metrics collaborator."""

    cache: CacheStats
    concurrency: ConcurrencyState
    dedup: DedupStats


# --- Configuration ---


class TierConfig(BaseModel):
    """Capacity and admission settings for one cache tier."""

    kind: Tier
    max_entries: Optional[int] = Field(default=None, gt=0)
    max_bytes: Optional[int] = Field(default=None, gt=0)
    min_entry_size: int = Field(
        default=0, ge=0, description="Skip this tier for entries smaller than this many bytes"
    )
    directory: Optional[str] = Field(
        default=None, description="Disk tier location; defaults to the XDG cache dir"
    )


def _default_tiers() -> list[TierConfig]:
    return [
        TierConfig(kind=Tier.MEMORY, max_entries=1024),
        TierConfig(kind=Tier.DISK, max_entries=10_000, max_bytes=256 * 1024 * 1024),
    ]


def _default_mutating_patterns() -> list[str]:
    return [
        f"*:{verb}-*"
        for verb in (
            "create", "delete", "update", "put", "modify", "terminate",
            "run", "start", "stop", "reboot", "attach", "detach", "tag", "untag",
        )
    ]


class TtlConfig(BaseModel):
    """TTL policy table: glob rules over ``service:operation`` in priority order."""

    rules: dict[str, float] = Field(
        default_factory=lambda: {
            "iam:*": 3600.0,
            "*:describe-regions": 86400.0,
            "*:list-*": 600.0,
            "*:describe-*": 60.0,
        }
    )
    default_ttl: Optional[float] = Field(default=300.0, ge=0)
    mutating_patterns: list[str] = Field(default_factory=_default_mutating_patterns)


class CacheConfig(BaseModel):
    """Response cache settings."""

    enabled: bool = Field(default=True, description="Enable response caching")
    tiers: list[TierConfig] = Field(default_factory=_default_tiers)
    write_through_depth: Optional[int] = Field(
        default=None, ge=1, description="Number of tiers written on put (default: all)"
    )
    sweep_interval: float = Field(default=60.0, gt=0, description="Seconds between expiry sweeps")
    ttl: TtlConfig = Field(default_factory=TtlConfig)


class ConcurrencyConfig(BaseModel):
    """Adaptive concurrency settings."""

    initial_limit: int = Field(default=5, ge=1)
    min_limit: int = Field(default=1, ge=1)
    max_limit: int = Field(default=32, ge=1)
    target_latency: float = Field(default=2.0, gt=0, description="Seconds")
    sample_window: int = Field(default=10, ge=1, description="Latency samples per adjustment")
    increase_margin: float = Field(default=0.2, ge=0, lt=1)
    increase_step: int = Field(default=1, ge=1)
    decrease_factor: float = Field(default=0.5, gt=0, lt=1)
    cooldown: float = Field(default=1.0, ge=0, description="Seconds between adjustments")
    acquire_timeout: Optional[float] = Field(default=None, gt=0)


class DedupConfig(BaseModel):
    """In-flight coalescing settings."""

    enabled: bool = True
    window: float = Field(default=0.0, ge=0, description="Seconds a result stays reusable")


class StreamConfig(BaseModel):
    """Streaming buffer watermarks."""

    high_water: int = Field(default=100, ge=1)
    low_water: int = Field(default=25, ge=0)
    pull_timeout: Optional[float] = Field(default=None, gt=0)


class TransportConfig(BaseModel):
    """Settings for the transport built by :meth:`Engine.from_config`."""

    kind: Literal["subprocess", "http"] = "subprocess"
    executable: str = Field(default="aws", description="Provider CLI executable")
    extra_args: list[str] = Field(default_factory=list)
    base_url: Optional[str] = Field(default=None, description="Gateway URL for the http transport")
    timeout: float = Field(default=60.0, gt=0, description="Per-call timeout in seconds")
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)


class EngineConfig(BaseModel):
    """Process-wide engine configuration persisted at ``~/.config/cliaccel/config.json``.

    Loaded by :func:`~cliaccel.config.resolve_config`, which layers the
    project file, environment variables and explicit overrides on top.
    """

    cache: CacheConfig = Field(default_factory=CacheConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
