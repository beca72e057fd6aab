"""Request fingerprinting.

A fingerprint is ``<service>:<operation>:<sha256>`` where the digest covers
the target and the normalised parameters. Normalisation sorts mapping keys
recursively and drops ``None`` values, so ``{"a": 1, "b": None}`` and
``{"a": 1}`` produce the same key, and parameter order never matters.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from cliaccel.models import Target


def normalize_parameters(value: Any) -> Any:
    """Return a canonical copy of *value* for hashing.

    Mappings lose their ``None`` entries and are re-keyed as strings; tuples
    become lists. Other values pass through and are encoded by ``json``
    (falling back to ``str`` for unknown types).
    """
    if isinstance(value, Mapping):
        return {
            str(k): normalize_parameters(v)
            for k, v in value.items()
            if v is not None
        }
    if isinstance(value, (list, tuple)):
        return [normalize_parameters(v) for v in value]
    return value


def fingerprint(target: Target | str, parameters: Mapping[str, Any] | None = None) -> str:
    """Compute the fingerprint for a target and its parameters.

    Args:
        target: A :class:`~cliaccel.models.Target` or its ``service:operation`` text.
        parameters: Request parameters, in any order.

    Returns:
        ``"<service>:<operation>:<64 hex chars>"``.
    """
    label = str(target)
    payload = json.dumps(
        {"target": label, "parameters": normalize_parameters(parameters or {})},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{label}:{digest}"
