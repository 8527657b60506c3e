"""Console output for the restpipe CLI.

Data goes to **stdout** (response bodies, tables, JSON documents) and
everything else -- status lines, warnings, errors, debug notes -- goes to
**stderr**, so ``restpipe request ... | jq`` always sees clean data.

:class:`OutputManager` resolves the output format once (Rich on an
interactive terminal, plain text when piped, or JSON when asked for) and
holds one Rich :class:`~rich.console.Console` per stream. The CLI builds one
in :func:`~restpipe.app.main_callback` and installs it with
:func:`set_output`; commands fetch it with :func:`get_output`.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from restpipe.payload import ResponsePayload


class OutputFormat(str, Enum):
    """Output format. ``AUTO`` becomes ``RICH`` on a colour TTY, else ``PLAIN``."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Routes CLI output to stdout or stderr in the resolved format.

    Args:
        format: Requested format; ``AUTO`` is resolved from TTY detection.
        no_color: Disable colour and Rich markup.
        quiet: Suppress informational and success messages.
        verbose: Show debug messages.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _color_disabled_by_env()
        self._quiet = quiet
        self._verbose = verbose

        if format == OutputFormat.AUTO:
            rich_ok = _stdout_is_tty() and not self._no_color
            format = OutputFormat.RICH if rich_ok else OutputFormat.PLAIN
        self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=format == OutputFormat.RICH,
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        return self._verbose

    # ------------------------------------------------------------------
    # Data (stdout)
    # ------------------------------------------------------------------

    def print_data(self, text: str) -> None:
        """Write *text* to stdout unformatted."""
        print(text, file=sys.stdout, flush=True)

    def format_data(self, data: Any) -> None:
        """Render a JSON-compatible value (or text) to stdout in the active format."""
        if self._format == OutputFormat.JSON:
            self.print_data(_dumps(_maybe_json(data)))
        elif self._format == OutputFormat.PLAIN:
            self._print_plain(data)
        else:
            value = _maybe_json(data)
            if isinstance(value, (dict, list)):
                self._stdout.print(
                    Syntax(_dumps(value), "json", theme="monokai", word_wrap=True)
                )
            else:
                self._stdout.print(str(value))

    def print_response(self, response: ResponsePayload, show_headers: bool = False) -> None:
        """Show a response: status line on stderr, body on stdout.

        In JSON mode the whole response (status, headers, data) is written
        to stdout as one document instead.
        """
        if self._format == OutputFormat.JSON:
            self.print_data(
                _dumps(
                    {
                        "status_code": response.status_code,
                        "headers": response.headers,
                        "data": response.data,
                        "elapsed": round(response.elapsed, 4),
                    }
                )
            )
            return

        status = f"HTTP {response.status_code} ({response.elapsed * 1000:.0f} ms)"
        if response.is_error:
            self.warning(status)
        else:
            self.info(status)
        if show_headers:
            for key, value in response.headers.items():
                self.info(f"{key}: {value}")
        if response.data is not None:
            self.format_data(response.data)

    def print_table(
        self, headers: list[str], rows: list[list[str]], title: Optional[str] = None
    ) -> None:
        """Print rows as a Rich table, tab-separated text, or a JSON array of objects."""
        if self._format == OutputFormat.JSON:
            self.print_data(_dumps([dict(zip(headers, row)) for row in rows]))
        elif self._format == OutputFormat.PLAIN:
            for line in [headers, *rows]:
                self.print_data("\t".join(line))
        else:
            table = Table(title=title, show_header=True, header_style="bold cyan")
            for header in headers:
                table.add_column(header)
            for row in rows:
                table.add_row(*row)
            self._stdout.print(table)

    def _print_plain(self, data: Any) -> None:
        if isinstance(data, dict):
            for key, value in data.items():
                rendered = _dumps(value) if isinstance(value, (dict, list)) else value
                self.print_data(f"{key}\t{rendered}")
        elif isinstance(data, list):
            for item in data:
                self.print_data(_dumps(item) if isinstance(item, (dict, list)) else str(item))
        else:
            self.print_data(str(data))

    # ------------------------------------------------------------------
    # Diagnostics (stderr)
    # ------------------------------------------------------------------

    def _diag(self, plain: str, markup: str) -> None:
        if self._no_color:
            print(plain, file=sys.stderr, flush=True)
        else:
            self._stderr.print(markup)

    def info(self, message: str) -> None:
        """Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diag(message, message)

    def success(self, message: str) -> None:
        """Suppressed by ``--quiet``."""
        if not self._quiet:
            self._diag(message, f"[green]{message}[/green]")

    def warning(self, message: str) -> None:
        self._diag(f"Warning: {message}", f"[yellow]Warning:[/yellow] {message}")

    def error(self, message: str) -> None:
        self._diag(f"Error: {message}", f"[bold red]Error:[/bold red] {message}")

    def debug(self, message: str) -> None:
        """Only shown with ``--verbose``."""
        if self._verbose:
            self._diag(f"[debug] {message}", f"[dim]\\[debug] {message}[/dim]")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _maybe_json(data: Any) -> Any:
    """Parse *data* as JSON when it is a string holding a JSON document."""
    if isinstance(data, str):
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return data
    return data


def _stdout_is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _color_disabled_by_env() -> bool:
    """``NO_COLOR`` (any value) or ``TERM=dumb`` disables colour."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------
# Global instance
# ------------------------------------------------------------------

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the installed :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Forget the installed manager (used between tests)."""
    global _output
    _output = None
