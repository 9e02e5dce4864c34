"""Typer application and CLI entry point for overdrip.

This module wires together the top-level Typer application and registers the
built-in sub-commands (``setup``, ``start``, ``status``, ``logout``,
``config``, ``serve``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers, registers commands and
invokes the Typer app. :class:`~overdrip.exceptions.OverdripError` exits with
its own exit code; anything else is written to a crash log under the data
directory.

See Also:
    :mod:`overdrip.config`: Client configuration resolution.
    :mod:`overdrip.output`: Output formatting initialised in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any

import typer
from rich.logging import RichHandler

from overdrip import __version__
from overdrip.exit_codes import EXIT_GENERIC_FAILURE

app = typer.Typer(
    name="overdrip",
    help="Provision and run Overdrip devices.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

_commands_registered = False


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"overdrip {__version__}")
        raise typer.Exit()


def _configure_logging(console: Any, verbose: bool) -> None:
    """Route library logging through Rich on stderr.

    Only warnings are shown by default; ``--verbose`` shows everything down
    to DEBUG.
    """
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("overdrip")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


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
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Initialises the global :class:`~overdrip.output.OutputManager` from CLI
    flags, attaches logging to its stderr console, and stores shared options
    in ``ctx.obj``.
    """
    from overdrip.output import OutputFormat, OutputManager, set_output

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
    _configure_logging(output.stderr_console, verbose)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def register_commands() -> None:
    """Attach the built-in sub-commands to :data:`app` (idempotent)."""
    global _commands_registered
    if _commands_registered:
        return

    from overdrip.commands.config import config_app
    from overdrip.commands.device import logout_command, start_command, status_command
    from overdrip.commands.serve import serve_command
    from overdrip.commands.setup import setup_command

    app.command("setup")(setup_command)
    app.command("start")(start_command)
    app.command("status")(status_command)
    app.command("logout")(logout_command)
    app.command("serve")(serve_command)
    app.add_typer(config_app, name="config", help="Client configuration.")
    _commands_registered = True


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from overdrip.config import get_data_dir

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = get_data_dir() / f"crash-{timestamp}.log"
    log_path.write_text(traceback.format_exc())
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``overdrip`` console script.

    Unhandled :class:`~overdrip.exceptions.OverdripError` instances cause a
    clean exit with the error's ``exit_code``. All other exceptions produce a
    crash log and a generic failure exit.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        register_commands()
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from overdrip.exceptions import OverdripError
        from overdrip.output import error

        if isinstance(exc, OverdripError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
