"""Built-in CLI sub-commands for ascli.

* :mod:`~ascli.commands.auth` -- ``login``, ``logout``, ``status`` and
  ``doctor`` for credential profiles.
* :mod:`~ascli.commands.api` -- the generic ``request`` and ``download``
  commands built on the request dispatcher.

Commands convert :class:`~ascli.exceptions.AscliError` into an error message
and the matching exit code through :func:`exit_on_error`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import typer

from ascli.exceptions import AscliError
from ascli.output import error


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Print an :class:`AscliError` and exit with its code."""
    try:
        yield
    except AscliError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
