"""Output formatting with strict stdout/stderr discipline.

Follows `clig.dev <https://clig.dev/>`_ conventions:

* **stdout** -- primary data only (API responses, JSON, tables, the doctor
  report). This is what downstream tools pipe and parse.
* **stderr** -- all diagnostics (status, warnings, errors, suggestions).
* **TTY detection** -- Rich formatting when stdout is an interactive
  terminal, plain text when piped to another process.
* **Colour control** -- respects ``NO_COLOR``, ``TERM=dumb``, and the
  ``--no-color`` CLI flag.

Diagnostics often carry server-supplied text (API error titles, file names).
Every diagnostic is passed through
:func:`~ascli.exceptions.sanitize_terminal` and Rich-escaped before it is
printed, so neither terminal escape sequences nor Rich markup in that text
take effect.

The module exposes two layers:

1. :class:`OutputManager` -- format preferences, Rich consoles, and
   quiet/verbose flags. Created once in :func:`~ascli.app.main_callback`
   and installed via :func:`set_output`.
2. Module-level convenience functions (:func:`info`, :func:`error`,
   :func:`debug`, etc.) that delegate to the global ``OutputManager``.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from ascli.exceptions import sanitize_terminal
from ascli.models import DoctorReport, DoctorStatus


class OutputFormat(str, Enum):
    """Supported output formats.

    ``AUTO`` resolves to ``RICH`` when stdout is an interactive TTY and colour
    is not disabled, or to ``PLAIN`` otherwise. ``--json`` and ``--plain``
    force a format.
    """

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


_STATUS_STYLE = {
    DoctorStatus.OK: ("green", "OK"),
    DoctorStatus.INFO: ("cyan", "INFO"),
    DoctorStatus.WARN: ("yellow", "WARN"),
    DoctorStatus.FAIL: ("bold red", "FAIL"),
}


class OutputManager:
    """Central manager for all CLI output.

    Maintains one Rich :class:`~rich.console.Console` for stdout (data) and
    one for stderr (diagnostics) and routes every call to the right stream.

    Args:
        format: Desired output format. ``AUTO`` resolves based on TTY
            detection.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress non-essential informational messages on stderr.
        verbose: Enable debug-level messages on stderr.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose
        self._format = _resolve_format(format, self._no_color)

        # Consoles bind to the streams current at construction.
        rich_stdout = self._format == OutputFormat.RICH
        self._stdout = Console(file=sys.stdout, no_color=self._no_color, force_terminal=rich_stdout)
        # No auto-highlighting: diagnostics quote server text verbatim.
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True, highlight=False)

    @property
    def format(self) -> OutputFormat:
        """The resolved output format."""
        return self._format

    # ------------------------------------------------------------------ #
    # Data output (stdout)
    # ------------------------------------------------------------------ #

    def format_response(self, data: Any) -> None:
        """Render an API response payload to stdout in the active format.

        JSON mode prints the document unchanged. Plain mode prints one line
        per JSON:API resource. Rich mode shows resource lists as a table and
        anything else as highlighted JSON.

        Args:
            data: Decoded JSON (dict or list) or raw text.
        """
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                self.print_data(sanitize_terminal(data))
                return

        if self._format == OutputFormat.JSON:
            self.print_data(_to_json(data))
            return
        if self._format == OutputFormat.PLAIN:
            for line in _plain_lines(data):
                self.print_data(sanitize_terminal(line))
            return

        resources = data.get("data") if isinstance(data, dict) else None
        if isinstance(resources, list) and resources and all(_is_resource(r) for r in resources):
            self._stdout.print(_resource_table(resources))
        else:
            self._stdout.print(Syntax(_to_json(data), "json", theme="monokai", word_wrap=True))

    def print_data(self, text: str) -> None:
        """Print raw text to stdout."""
        print(text, file=sys.stdout, flush=True)

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Print tabular data to stdout in the active format.

        * **Rich mode** -- styled :class:`~rich.table.Table`.
        * **JSON mode** -- array of objects keyed by header names.
        * **Plain mode** -- tab-separated values, one row per line.
        """
        if self._format == OutputFormat.JSON:
            records = [dict(zip(headers, row)) for row in rows]
            self.print_data(json.dumps(records, indent=2, ensure_ascii=False))
        elif self._format == OutputFormat.PLAIN:
            self.print_data("\t".join(headers))
            for row in rows:
                self.print_data("\t".join(sanitize_terminal(cell) for cell in row))
        else:
            table = Table(title=title, show_header=True, header_style="bold cyan")
            for h in headers:
                table.add_column(h)
            for row in rows:
                table.add_row(*(escape(sanitize_terminal(cell)) for cell in row))
            self._stdout.print(table)

    def print_doctor_report(self, report: DoctorReport) -> None:
        """Print a doctor report: sections, summary line, recommendations."""
        if self._format == OutputFormat.JSON:
            self.print_data(report.model_dump_json(indent=2))
            return

        plain = self._format == OutputFormat.PLAIN or self._no_color
        for section in report.sections:
            if plain:
                self.print_data(section.title)
            else:
                self._stdout.print(f"[bold]{escape(section.title)}[/bold]")
            for check in section.checks:
                style, label = _STATUS_STYLE[check.status]
                message = sanitize_terminal(check.message)
                if check.fix_applied:
                    message += " (fixed)"
                if plain:
                    self.print_data(f"  [{label}] {message}")
                else:
                    self._stdout.print(f"  [{style}]{label:<4}[/{style}] {escape(message)}")
            self.print_data("")

        summary = report.summary
        self.print_data(
            f"Summary: {summary.ok} ok, {summary.info} info, "
            f"{summary.warnings} warnings, {summary.errors} errors"
        )
        if report.recommendations:
            self.print_data("Recommendations:")
            for recommendation in report.recommendations:
                self.print_data(f"  - {sanitize_terminal(recommendation)}")

    # ------------------------------------------------------------------ #
    # Diagnostics (stderr)
    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        """Print an informational message to stderr. Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diagnostic(message)

    def success(self, message: str) -> None:
        """Print a green success message to stderr. Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diagnostic(message, style="green")

    def warning(self, message: str) -> None:
        """Print a yellow warning to stderr. NOT suppressed by ``--quiet``."""
        self._diagnostic(message, prefix="Warning:", prefix_style="yellow")

    def error(self, message: str) -> None:
        """Print a bold-red error to stderr. Never suppressed."""
        self._diagnostic(message, prefix="Error:", prefix_style="bold red")

    def suggest(self, message: str) -> None:
        """Print a dimmed next-step suggestion to stderr. Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diagnostic(f"→ {message}", style="dim")

    def debug(self, message: str) -> None:
        """Print a debug message to stderr. Only shown with ``--verbose``."""
        if self._verbose:
            self._diagnostic(message, prefix="[debug]", style="dim")

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _diagnostic(
        self,
        message: str,
        prefix: str = "",
        style: str = "",
        prefix_style: str = "",
    ) -> None:
        text = sanitize_terminal(message)
        if self._no_color:
            line = f"{prefix} {text}" if prefix else text
            print(line, file=sys.stderr, flush=True)
            return
        body = escape(text)
        head = escape(prefix)
        if prefix and prefix_style:
            head = f"[{prefix_style}]{head}[/{prefix_style}]"
        line = f"{head} {body}" if prefix else body
        if style:
            line = f"[{style}]{line}[/{style}]"
        self._stderr.print(line, soft_wrap=True)


# ------------------------------------------------------------------ #
# Response rendering
# ------------------------------------------------------------------ #


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _resource_cells(resource: dict[str, Any]) -> tuple[str, str, str]:
    """``type``, ``id`` and compact ``attributes`` of a JSON:API resource object."""
    attributes = resource.get("attributes")
    rendered = json.dumps(attributes, ensure_ascii=False, sort_keys=True) if attributes else ""
    return str(resource.get("type", "")), str(resource.get("id", "")), rendered


def _is_resource(value: Any) -> bool:
    return isinstance(value, dict) and "type" in value and "id" in value


def _resource_table(resources: list[dict[str, Any]]) -> Table:
    table = Table(show_header=True, header_style="bold cyan")
    for column in ("Type", "ID", "Attributes"):
        table.add_column(column)
    for resource in resources:
        table.add_row(*(escape(sanitize_terminal(cell)) for cell in _resource_cells(resource)))
    return table


def _plain_lines(data: Any) -> list[str]:
    """Flatten a response for ``--plain`` output, one record per line.

    JSON:API documents print one ``type<TAB>id<TAB>attributes`` line per
    resource in ``data``; other objects print ``key<TAB>value`` pairs.
    """
    if isinstance(data, dict) and "data" in data:
        data = data["data"]
    if isinstance(data, dict):
        if _is_resource(data):
            return ["\t".join(_resource_cells(data)).rstrip("\t")]
        return [f"{key}\t{value}" for key, value in data.items()]
    if isinstance(data, list):
        lines = []
        for item in data:
            if _is_resource(item):
                lines.append("\t".join(_resource_cells(item)).rstrip("\t"))
            elif isinstance(item, dict):
                lines.append("\t".join(str(v) for v in item.values()))
            else:
                lines.append(str(item))
        return lines
    return [str(data)]


# ------------------------------------------------------------------ #
# Module-level helpers
# ------------------------------------------------------------------ #


def _is_tty() -> bool:
    """Check if stdout is a TTY."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _resolve_format(requested: OutputFormat, no_color: bool) -> OutputFormat:
    if requested != OutputFormat.AUTO:
        return requested
    return OutputFormat.RICH if _is_tty() and not no_color else OutputFormat.PLAIN


def _should_disable_color() -> bool:
    """Whether ``NO_COLOR`` (any value) or ``TERM=dumb`` disables colour."""
    if os.environ.get("NO_COLOR") is not None:
        return True
    return os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Global output instance (set during app startup)
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the global :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    """Install *output* as the global :class:`OutputManager` instance."""
    global _output
    _output = output


def reset_output() -> None:
    """Reset the global :class:`OutputManager` (used between tests)."""
    global _output
    _output = None


# ------------------------------------------------------------------ #
# Convenience functions that use the global instance
# ------------------------------------------------------------------ #


def format_response(data: Any) -> None:
    get_output().format_response(data)


def print_data(text: str) -> None:
    get_output().print_data(text)


def info(message: str) -> None:
    get_output().info(message)


def error(message: str) -> None:
    get_output().error(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def debug(message: str) -> None:
    get_output().debug(message)
