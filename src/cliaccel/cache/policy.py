"""TTL resolution per target.

TTL is a pure function of the request target: an ordered table of glob rules
over ``service:operation`` (first match wins) backed by a default. Targets
matching a *mutating* pattern are never cached; a successful call to one of
them invalidates every cached entry of the same service.
"""

from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Optional

from cliaccel.exceptions import ConfigError
from cliaccel.models import Request, Target, TtlConfig


class TtlPolicy:
    """Resolve cache lifetimes and mutation behaviour from a :class:`TtlConfig`.

    Args:
        config: The policy table.

    Raises:
        ConfigError: If a rule has a negative TTL, or if no rule is a
            catch-all (``"*"``) and ``default_ttl`` is unset, which would leave
            some targets without a TTL.
    """

    def __init__(self, config: TtlConfig) -> None:
        for pattern, ttl in config.rules.items():
            if ttl < 0:
                raise ConfigError(f"TTL for '{pattern}' must be >= 0, got {ttl}")
        if config.default_ttl is None and "*" not in config.rules:
            raise ConfigError(
                "TTL table has no default: set 'default_ttl' or add a '*' rule"
            )
        self._rules = list(config.rules.items())
        self._default = config.default_ttl
        self._mutating = list(config.mutating_patterns)

    def ttl_for(self, target: Target | str) -> float:
        """Return the TTL in seconds for *target*."""
        label = str(target)
        for pattern, ttl in self._rules:
            if fnmatchcase(label, pattern):
                return ttl
        if self._default is None:
            raise ConfigError(f"No TTL rule matches '{label}' and no default_ttl is set")
        return self._default

    def is_mutating(self, target: Target | str) -> bool:
        label = str(target)
        return any(fnmatchcase(label, pattern) for pattern in self._mutating)

    def resolve(self, request: Request) -> Optional[float]:
        """Return the TTL to cache *request*'s result with, or ``None`` to skip caching."""
        policy = request.cache_policy
        if not policy.cacheable or self.is_mutating(request.target):
            return None
        if policy.ttl is not None:
            return policy.ttl
        return self.ttl_for(request.target)

    def invalidations(self, request: Request) -> list[str]:
        """Fingerprint patterns to drop after *request* succeeds."""
        patterns = list(request.cache_policy.invalidates)
        if self.is_mutating(request.target):
            patterns.append(f"{request.target.service}:*")
        return patterns
