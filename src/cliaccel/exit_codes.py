"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~cliaccel.exceptions.CliaccelError` subclass.
Shell wrappers can inspect the exit code to tell a throttled or failing
remote call apart from a local configuration problem.

Example::

    $ cliaccel exec describe.json
    $ echo $?
    5   # EXIT_REMOTE_ERROR -- the provider rejected the call
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or an unreadable request file."""

EXIT_CONFIG_ERROR = 3
"""The configuration could not be loaded or failed validation."""

EXIT_REMOTE_ERROR = 5
"""The remote API (or the provider CLI) reported a failure."""

EXIT_TIMEOUT = 6
"""A remote call, permit wait, or stream pull exceeded its time bound."""

EXIT_CANCELLED = 130
"""The operation was cancelled by the caller (mirrors SIGINT)."""
