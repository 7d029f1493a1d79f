"""Typer application and CLI entry point for ascli.

This module wires together the top-level Typer application: global options
in :func:`main_callback`, the ``auth`` sub-command group, and the generic
``request`` / ``download`` commands.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
:class:`~ascli.exceptions.AscliError` escaping a command exits with the
error's code; any other exception is written to a crash log under the data
directory.

See Also:
    :mod:`ascli.config`: Config file and request settings.
    :mod:`ascli.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer

from ascli import __version__
from ascli.commands.api import download_command, request_command
from ascli.commands.auth import auth_app
from ascli.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE
from ascli.output import OutputFormat, OutputManager, set_output


app = typer.Typer(
    name="ascli",
    help="App Store Connect API client.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

app.add_typer(auth_app, name="auth", help="Credential profile management.")
app.command("request")(request_command)
app.command("download")(download_command)


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"ascli {__version__}")
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
    profile: Optional[str] = typer.Option(
        None, "--profile", "-p", help="Credential profile to use."
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
        False, "--verbose", "-v", help="Enable debug output."
    ),
    timeout: Optional[str] = typer.Option(
        None, "--timeout", help="Request timeout, e.g. 30, 90s, 2m."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~ascli.output.OutputManager` from CLI
    flags and stores shared options (``profile``, ``timeout``) in
    ``ctx.obj`` for sub-commands.
    """
    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))
    _configure_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["profile"] = profile
    ctx.obj["timeout"] = timeout
    ctx.obj["verbose"] = verbose


_log_handler = logging.StreamHandler()
_log_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))


def _configure_logging(verbose: bool) -> None:
    """Route library log records to stderr; debug records only with ``--verbose``."""
    # sys.stderr may have been swapped since the last invocation.
    _log_handler.stream = sys.stderr
    root = logging.getLogger("ascli")
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if _log_handler not in root.handlers:
        root.addHandler(_log_handler)


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(EXIT_CANCELLED)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from ascli.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``ascli`` console script.

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
        from ascli.exceptions import AscliError
        from ascli.output import error

        if isinstance(exc, AscliError):
            error(str(exc))
            sys.exit(exc.exit_code)
        log_path = _write_crash_log(exc)
        error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
