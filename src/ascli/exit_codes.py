"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~ascli.exceptions.AscliError` subclass.
Shell wrappers and CI scripts can inspect the exit code to tell a rejected
credential apart from a missing resource without parsing stderr.

Example::

    $ ascli request GET /v1/apps/123
    $ echo $?
    4   # EXIT_NOT_FOUND -- the app does not exist
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""Invalid arguments, a rejected request body, or a rejected follow URL."""

EXIT_AUTH_FAILURE = 3
"""Credentials could not be resolved, or the API rejected them."""

EXIT_NOT_FOUND = 4
"""The requested resource was not found."""

EXIT_SERVER_ERROR = 5
"""The API returned an error that is not otherwise classified."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (DNS failure, connection refused)."""

EXIT_TIMEOUT = 8
"""The caller's deadline elapsed before the request completed."""

EXIT_CANCELLED = 130
"""The request was cancelled (mirrors the shell's SIGINT convention)."""
