"""Typer application and CLI entry point for restpipe.

This module wires the root Typer application to its sub-commands
(``request``, ``plugins``, ``builtins``, ``config``). The CLI is a thin
developer tool over :class:`~restpipe.pipeline.Pipeline`; the library API is
the primary interface.

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers and invokes the Typer app.
Unhandled exceptions are written to a crash log under the data directory.

See Also:
    :mod:`restpipe.config`: Configuration loading and environment overrides.
    :mod:`restpipe.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from restpipe import __version__
from restpipe.exit_codes import EXIT_CANCELLED, EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="restpipe",
    help="Send requests through an interceptor pipeline with plugins and retries.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------

from restpipe.commands.config import config_app  # noqa: E402
from restpipe.commands.request import (  # noqa: E402
    builtins_command,
    plugins_command,
    request_command,
)

app.command("request")(request_command)
app.command("plugins")(plugins_command)
app.command("builtins")(builtins_command)
app.add_typer(config_app, name="config", help="Configuration management.")


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"restpipe {__version__}")
        raise typer.Exit()


def _configure_logging() -> None:
    """Route library log records, DEBUG and up, to stderr through Rich."""
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


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
    json_output: bool = typer.Option(False, "--json", help="JSON output format."),
    plain_output: bool = typer.Option(False, "--plain", help="Plain text output."),
    no_color: bool = typer.Option(False, "--no-color", help="Disable color output."),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output and logging."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~restpipe.output.OutputManager` built from
    the output flags and configures logging.
    """
    from restpipe.output import OutputFormat, OutputManager, set_output

    fmt = OutputFormat.AUTO
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose))
    if verbose:
        _configure_logging()

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def _exit_cancelled(*_: Any) -> None:
    sys.stderr.write("\nCancelled.\n")
    sys.exit(EXIT_CANCELLED)


def _write_crash_log(exc: Exception) -> str:
    """Dump the active traceback into ``<data dir>/crash-<timestamp>.log``."""
    from restpipe.config import get_data_dir

    log_path = get_data_dir() / f"crash-{datetime.now():%Y%m%d-%H%M%S}.log"
    log_path.write_text(
        f"restpipe {__version__}\n"
        f"argv: {' '.join(sys.argv)}\n"
        f"{type(exc).__name__}: {exc}\n\n"
        f"{traceback.format_exc()}",
        encoding="utf-8",
    )
    return str(log_path)


def main() -> None:
    """Console-script entry point.

    A :class:`~restpipe.exceptions.RestpipeError` escaping a command is
    reported on stderr and becomes its ``exit_code``. Anything else is
    written to a crash log and exits with :data:`EXIT_GENERIC_FAILURE`.
    Ctrl-C exits with :data:`EXIT_CANCELLED`.
    """
    from restpipe.exceptions import RestpipeError
    from restpipe.output import get_output

    signal.signal(signal.SIGINT, _exit_cancelled)
    try:
        app()
    except KeyboardInterrupt:
        _exit_cancelled()
    except RestpipeError as exc:
        get_output().error(str(exc))
        sys.exit(exc.exit_code)
    except Exception as exc:
        log_path = _write_crash_log(exc)
        get_output().error(f"Unexpected error. Debug log: {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
