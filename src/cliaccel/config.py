"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for cliaccel:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.cliaccel/`` on macOS and Windows. See :func:`get_config_dir`,
  :func:`get_cache_dir`, :func:`get_data_dir`.
* **Engine config** -- A single :class:`~cliaccel.models.EngineConfig`
  JSON file storing concurrency limits, cache tiers, the TTL table and the
  transport. See :func:`load_engine_config`, :func:`save_engine_config`.
* **Precedence resolution** -- :func:`resolve_config` merges explicit
  overrides, environment variables, project-local config, and the user
  config into the effective configuration.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from cliaccel.exceptions import ConfigError
from cliaccel.models import EngineConfig

_APP_NAME = "cliaccel"
_CONFIG_FILENAME = "config.json"
_PROJECT_CONFIG_FILENAME = "cliaccel.json"

# Environment variable -> dotted config key
_ENV_OVERRIDES: dict[str, str] = {
    "CLIACCEL_MAX_CONCURRENCY": "concurrency.max_limit",
    "CLIACCEL_TARGET_LATENCY": "concurrency.target_latency",
    "CLIACCEL_DEDUP_WINDOW": "dedup.window",
    "CLIACCEL_TRANSPORT": "transport.kind",
    "CLIACCEL_EXECUTABLE": "transport.executable",
    "CLIACCEL_BASE_URL": "transport.base_url",
}

_TRUTHY = {"1", "true", "yes", "on"}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/cliaccel/`` (default ``~/.config/cliaccel/``).
    On macOS/Windows: ``~/.cliaccel/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_cache_dir() -> Path:
    """Return the cache directory, creating it if necessary.

    Holds the disk cache tier. Cached data can be safely deleted at any time.

    On Linux/BSD: ``$XDG_CACHE_HOME/cliaccel/`` (default ``~/.cache/cliaccel/``).
    On macOS/Windows: ``~/.cliaccel/cache/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CACHE_HOME", (".cache",)) / _APP_NAME
    else:
        path = _fallback_base_dir() / "cache"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/cliaccel/`` (default ``~/.local/share/cliaccel/``).
    On macOS/Windows: ``~/.cliaccel/logs/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Engine config ---


def config_path() -> Path:
    """Path to the user's engine config file."""
    return get_config_dir() / _CONFIG_FILENAME


def _read_json(path: Path, label: str) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, ValueError, OSError) as exc:
        raise ConfigError(f"Invalid {label} at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid {label} at {path}: expected a JSON object")
    return data


def load_engine_config() -> EngineConfig:
    """Load the engine configuration from the XDG config directory.

    Returns:
        The deserialised :class:`~cliaccel.models.EngineConfig`, or a default
        instance when the file does not exist.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = config_path()
    if not path.is_file():
        return EngineConfig()
    data = _read_json(path, "engine config")
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid engine config at {path}: {exc}") from exc


def save_engine_config(config: EngineConfig) -> None:
    """Persist the engine configuration atomically to disk."""
    data = config.model_dump(mode="json")
    _atomic_write(config_path(), json.dumps(data, indent=2) + "\n")


# --- Project-local config ---


def load_project_config() -> Optional[dict[str, Any]]:
    """Load project-local configuration from ``./cliaccel.json``.

    The file holds a partial engine config (for example only a
    ``cache.ttl.rules`` table) that is deep-merged over the user config.

    Returns:
        The parsed JSON as a dict, or ``None`` if the file does not exist.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    path = Path.cwd() / _PROJECT_CONFIG_FILENAME
    if not path.is_file():
        return None
    return _read_json(path, "project config")


# --- Precedence resolution ---


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        # TTL rules are ordered; an overlay table replaces the whole table.
        if key == "rules":
            merged[key] = value
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def set_dotted(data: dict[str, Any], key: str, value: Any) -> None:
    """Set ``data["a"]["b"] = value`` for ``key="a.b"``, creating levels as needed."""
    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        nested = target.get(part)
        if not isinstance(nested, dict):
            nested = {}
            target[part] = nested
        target = nested
    target[parts[-1]] = value


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_var, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            set_dotted(overrides, key, value)
    no_cache = os.environ.get("CLIACCEL_NO_CACHE", "")
    if no_cache.lower() in _TRUTHY:
        set_dotted(overrides, "cache.enabled", False)
    return overrides


def resolve_config(overrides: Optional[dict[str, Any]] = None) -> EngineConfig:
    """Resolve the effective engine config with the full precedence chain.

    Precedence (high to low):
        1. *overrides* (nested dict, typically from CLI flags)
        2. Environment variables (``CLIACCEL_MAX_CONCURRENCY``,
           ``CLIACCEL_TARGET_LATENCY``, ``CLIACCEL_DEDUP_WINDOW``,
           ``CLIACCEL_NO_CACHE``, ``CLIACCEL_TRANSPORT``,
           ``CLIACCEL_EXECUTABLE``, ``CLIACCEL_BASE_URL``)
        3. Project config (``./cliaccel.json``)
        4. User config (``~/.config/cliaccel/config.json``)
        5. Defaults

    Raises:
        ConfigError: If any layer is malformed or the merged result fails
            validation.
    """
    data = load_engine_config().model_dump(mode="json")

    project = load_project_config()
    if project is not None:
        data = _deep_merge(data, project)

    data = _deep_merge(data, _env_overrides())
    if overrides:
        data = _deep_merge(data, overrides)

    # A lowered max below the configured initial limit pulls the initial down.
    concurrency = data.get("concurrency", {})
    try:
        max_limit = int(concurrency.get("max_limit", 0))
        if max_limit and int(concurrency.get("initial_limit", 0)) > max_limit:
            concurrency["initial_limit"] = max_limit
    except (TypeError, ValueError):
        pass

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
