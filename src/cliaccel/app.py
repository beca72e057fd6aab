"""Typer application and CLI entry point for cliaccel.

This module wires together the top-level Typer application and registers
the built-in commands (``exec``, ``paginate``, ``cache``, ``config``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
Unhandled exceptions are written to a crash log under the data directory.

See Also:
    :mod:`cliaccel.config`: Configuration resolution.
    :mod:`cliaccel.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer

from cliaccel import __version__
from cliaccel.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="cliaccel",
    help="Run control-plane API requests with caching, coalescing and adaptive concurrency.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"cliaccel {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output and engine logs."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~cliaccel.output.OutputManager` from the
    CLI flags, routes engine log records to stderr, and stores shared
    options in ``ctx.obj``.
    """
    from cliaccel.output import OutputFormat, OutputManager, configure_logging, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    output = OutputManager(
        format=fmt,
        no_color=no_color,
        quiet=quiet,
        verbose=verbose,
    )
    set_output(output)
    configure_logging(output)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def _register_commands() -> None:
    from cliaccel.commands.cache import cache_app
    from cliaccel.commands.config import config_app
    from cliaccel.commands.run import exec_command, paginate_command

    app.command("exec")(exec_command)
    app.command("paginate")(paginate_command)
    app.add_typer(cache_app, name="cache", help="Response cache maintenance.")
    app.add_typer(config_app, name="config", help="Configuration management.")


_register_commands()


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELLED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from cliaccel.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``cliaccel`` console script.

    Unhandled :class:`~cliaccel.exceptions.CliaccelError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce
    a crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELLED)
    except Exception as exc:
        from cliaccel.exceptions import CliaccelError
        from cliaccel.output import error

        if isinstance(exc, CliaccelError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
