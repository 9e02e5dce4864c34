"""Terminal output with strict stdout/stderr discipline.

* **stdout** -- primary data only (device status, configuration dumps).
  ``overdrip status --json | jq .deviceId`` must keep working.
* **stderr** -- all diagnostics (setup progress, warnings, errors,
  suggestions) and the ``overdrip`` logger.
* **TTY detection** -- Rich formatting when stdout is an interactive
  terminal, plain text when piped.
* **Colour control** -- respects ``NO_COLOR``, ``TERM=dumb``, and the
  ``--no-color`` CLI flag.

:class:`OutputManager` is created once in :func:`~overdrip.app.main_callback`
and installed with :func:`set_output`; the module-level helpers delegate to
that instance.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, NamedTuple, Optional

from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table


class OutputFormat(str, Enum):
    """Supported output formats. ``AUTO`` resolves to ``RICH`` on a colour TTY, ``PLAIN`` otherwise."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class _Kind(NamedTuple):
    prefix: str
    style: str
    quiet_hides: bool


# Prefix, Rich style and --quiet behaviour of every diagnostic kind.
_KINDS = {
    "info": _Kind("", "", True),
    "success": _Kind("", "green", True),
    "progress": _Kind("", "dim", True),
    "suggest": _Kind("→ ", "dim", True),
    "warning": _Kind("Warning: ", "yellow", False),
    "error": _Kind("Error: ", "bold red", False),
    "debug": _Kind("[debug] ", "dim", False),
}


class OutputManager:
    """Routes every CLI message to the right stream in the right format.

    Args:
        format: Desired output format. ``AUTO`` resolves based on TTY
            detection.
        no_color: Disable all colour and Rich markup.
        quiet: Hide progress, info, success and suggestions.
        verbose: Show debug messages.
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

        if format == OutputFormat.AUTO:
            rich_ok = _is_tty() and not self._no_color
            format = OutputFormat.RICH if rich_ok else OutputFormat.PLAIN
        self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(self._format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        """The resolved output format."""
        return self._format

    @property
    def stderr_console(self) -> Console:
        """The diagnostics console, shared with the logging handler."""
        return self._stderr

    # ------------------------------------------------------------------ #
    # Data output (stdout)
    # ------------------------------------------------------------------ #

    def format_response(self, data: Any) -> None:
        """Render a dict or list to stdout in the active format.

        Flat dicts such as ``overdrip status`` become a two-column table in
        Rich mode and ``key<TAB>value`` lines in plain mode.
        """
        if self._format == OutputFormat.JSON:
            self.print_data(json.dumps(data, indent=2, ensure_ascii=False, default=str))
        elif self._format == OutputFormat.PLAIN:
            for line in _plain_lines(data):
                self.print_data(line)
        elif isinstance(data, dict) and not any(isinstance(v, (dict, list)) for v in data.values()):
            grid = Table(show_header=False, box=None, pad_edge=False)
            grid.add_column(style="bold cyan")
            grid.add_column()
            for key, value in data.items():
                grid.add_row(key, escape(_scalar(value)))
            self._stdout.print(grid)
        else:
            rendered = json.dumps(data, indent=2, ensure_ascii=False, default=str)
            self._stdout.print(Syntax(rendered, "json", theme="monokai", word_wrap=True))

    def print_data(self, text: str) -> None:
        """Print raw text to stdout."""
        print(text, file=sys.stdout, flush=True)

    # ------------------------------------------------------------------ #
    # Diagnostics (stderr)
    # ------------------------------------------------------------------ #

    def emit(self, kind: str, message: str) -> None:
        """Write a diagnostic of *kind* (a key of ``_KINDS``) to stderr."""
        entry = _KINDS[kind]
        if entry.quiet_hides and self._quiet:
            return
        if kind == "debug" and not self._verbose:
            return
        text = f"{entry.prefix}{message}"
        if self._no_color:
            print(text, file=sys.stderr, flush=True)
        elif entry.style:
            self._stderr.print(f"[{entry.style}]{escape(text)}[/{entry.style}]")
        else:
            self._stderr.print(escape(text))

    def info(self, message: str) -> None:
        self.emit("info", message)

    def success(self, message: str) -> None:
        self.emit("success", message)

    def progress(self, message: str) -> None:
        """One setup pipeline step."""
        self.emit("progress", message)

    def suggest(self, message: str) -> None:
        """Next-step hint printed after an error or a completed command."""
        self.emit("suggest", message)

    def warning(self, message: str) -> None:
        self.emit("warning", message)

    def error(self, message: str) -> None:
        """Never suppressed, not even by ``--quiet``."""
        self.emit("error", message)

    def debug(self, message: str) -> None:
        self.emit("debug", message)


def _scalar(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def _plain_lines(data: Any) -> list[str]:
    if isinstance(data, dict):
        return [f"{key}\t{_scalar(value)}" for key, value in data.items()]
    if isinstance(data, list):
        return [
            "\t".join(_scalar(v) for v in item.values()) if isinstance(item, dict) else _scalar(item)
            for item in data
        ]
    return [_scalar(data)]


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when ``NO_COLOR`` is set (any value) or ``TERM=dumb``."""
    return "NO_COLOR" in os.environ or os.environ.get("TERM") == "dumb"


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
    global _output
    _output = output


def reset_output() -> None:
    """Drop the global manager. Used by the test suite between tests."""
    global _output
    _output = None


def format_response(data: Any) -> None:
    get_output().format_response(data)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def progress(message: str) -> None:
    get_output().progress(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def warning(message: str) -> None:
    get_output().warning(message)


def error(message: str) -> None:
    get_output().error(message)


def debug(message: str) -> None:
    get_output().debug(message)
