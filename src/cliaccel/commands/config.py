"""Config commands -- view and modify the engine configuration.

Provides the ``cliaccel config`` sub-command group for reading, updating,
and resetting the user's engine configuration file
(:class:`~cliaccel.models.EngineConfig`).
"""

from __future__ import annotations

import json

import typer

from cliaccel.exceptions import CliaccelError
from cliaccel.output import error, format_response, info, success


config_app = typer.Typer(no_args_is_help=True)


@config_app.command("show")
def config_show(
    effective: bool = typer.Option(
        False,
        "--effective",
        help="Show the resolved config (project file and environment applied).",
    ),
) -> None:
    """Show the current configuration.

    Example::

        cliaccel config show
        cliaccel --json config show --effective
    """
    from cliaccel.config import get_config_dir, load_engine_config, resolve_config

    try:
        config = resolve_config() if effective else load_engine_config()
    except CliaccelError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    info(f"Config directory: {get_config_dir()}")
    format_response(config.model_dump(mode="json"))


def _coerce(current: object, value: str) -> object:
    """Coerce *value* to the type of the field's *current* value."""
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, (dict, list)) or current is None:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


@config_app.command("set")
def config_set(
    key: str = typer.Argument(
        help="Config key (dot notation, e.g., 'concurrency.max_limit')."
    ),
    value: str = typer.Argument(help="Value to set (JSON for lists and tables)."),
) -> None:
    """Set a configuration value.

    The value is coerced to the existing field's type and the updated config
    is validated before saving.

    Example::

        cliaccel config set concurrency.max_limit 16
        cliaccel config set dedup.window 0.5
        cliaccel config set cache.ttl.rules '{"ec2:describe-*": 30, "*": 300}'
    """
    from cliaccel.config import load_engine_config, save_engine_config
    from cliaccel.models import EngineConfig

    try:
        config = load_engine_config()
    except CliaccelError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    data = config.model_dump(mode="json")

    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if k not in target or not isinstance(target[k], dict):
            error(f"Invalid config key: {key}")
            raise typer.Exit(code=2)
        target = target[k]

    final_key = keys[-1]
    if final_key not in target:
        error(f"Unknown config key: {key}")
        raise typer.Exit(code=2)

    try:
        coerced = _coerce(target[final_key], value)
    except ValueError:
        error(f"Invalid value for {key}: {value}")
        raise typer.Exit(code=2) from None
    target[final_key] = coerced

    try:
        new_config = EngineConfig.model_validate(data)
    except ValueError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=2) from None

    save_engine_config(new_config)
    success(f"Set {key} = {coerced}")


@config_app.command("reset")
def config_reset(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Reset the configuration to defaults.

    Example::

        cliaccel config reset --force
    """
    from cliaccel.config import save_engine_config
    from cliaccel.models import EngineConfig

    if not force:
        confirmed = typer.confirm("Reset all config to defaults?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    save_engine_config(EngineConfig())
    success("Configuration reset to defaults.")
