"""Built-in CLI sub-commands for cliaccel.

This package groups the Typer sub-command modules that form the CLI's
command tree:

* :mod:`~cliaccel.commands.run` -- ``exec`` and ``paginate``, which run
  requests read from a JSON file through the engine.
* :mod:`~cliaccel.commands.cache` -- inspect, clear, and invalidate the
  persistent response cache.
* :mod:`~cliaccel.commands.config` -- view and modify the engine
  configuration.

Each module either exports a :class:`typer.Typer` sub-application (for
multi-command groups like ``cache`` and ``config``) or plain callback
functions registered directly on the root app (``exec``, ``paginate``).
"""
