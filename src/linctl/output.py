"""Terminal output for linctl commands.

Only data goes to **stdout**: the access token printed by ``linctl auth
token`` and the status or config payloads.  Scripts capture it with
``$(linctl auth token)``, so nothing else may be written there.  Every
diagnostic goes to **stderr**, including the sign-in URL, progress,
warnings and errors.

Rich styling is used only when stdout is a terminal.  ``NO_COLOR``,
``TERM=dumb`` and ``--no-color`` all turn it off.

:func:`~linctl.app.main_callback` builds one :class:`OutputManager` from
the global flags and installs it with :func:`set_output`.  Commands then
use the module-level helpers (:func:`info`, :func:`error`, ...).
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.table import Table


class OutputFormat(str, Enum):
    """How :meth:`OutputManager.format_response` renders payloads.

    ``AUTO`` becomes ``RICH`` on a colour terminal and ``PLAIN`` otherwise.
    """

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Routes data to stdout and diagnostics to stderr.

    Args:
        format: Payload format; ``AUTO`` is resolved from the terminal.
        no_color: Disable colour and Rich markup.
        quiet: Drop informational messages (``info``, ``success``,
            ``suggest``).  Warnings, errors and URLs are still shown.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet

        if format == OutputFormat.AUTO:
            rich = _is_tty() and not self._no_color
            format = OutputFormat.RICH if rich else OutputFormat.PLAIN
        self._format = format

        self._stdout = Console(
            file=sys.stdout,
            no_color=self._no_color,
            force_terminal=(format == OutputFormat.RICH),
        )
        self._stderr = Console(file=sys.stderr, no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def stderr_console(self) -> Console:
        """The diagnostics console, shared with the log handler."""
        return self._stderr

    # -- stdout -------------------------------------------------------------

    def format_response(self, data: Any) -> None:
        """Render a payload (usually a ``model_dump``) to stdout.

        JSON mode prints indented JSON.  Plain mode prints one
        ``key<TAB>value`` line per field, with list values space-joined.
        Rich mode prints an aligned two-column grid.
        """
        if self._format == OutputFormat.JSON:
            if isinstance(data, str):
                self.print_data(data)
            else:
                self.print_data(json.dumps(data, indent=2, ensure_ascii=False, default=str))
        elif self._format == OutputFormat.PLAIN:
            for line in _plain_lines(data):
                self.print_data(line)
        else:
            self._stdout.print(_rich_grid(data) if isinstance(data, dict) else str(data))

    def print_data(self, text: str) -> None:
        """Write *text* and a newline to stdout, unstyled."""
        print(text, file=sys.stdout, flush=True)

    # -- stderr -------------------------------------------------------------

    def info(self, message: str) -> None:
        self._emit(message, quiet_ok=False)

    def success(self, message: str) -> None:
        self._emit(message, style="green", quiet_ok=False)

    def warning(self, message: str) -> None:
        self._emit(message, label="Warning:", label_style="yellow")

    def error(self, message: str) -> None:
        """Print an error.  Never suppressed."""
        self._emit(message, label="Error:", label_style="bold red")

    def suggest(self, message: str) -> None:
        """Print a next step such as ``→ Sign in: linctl auth login``."""
        self._emit(f"→ {message}", style="dim", quiet_ok=False)

    def url(self, link: str) -> None:
        """Print a URL on one line so it can be copied.

        Not affected by ``--quiet``: during a headless sign-in this is the
        only way to reach the consent page.
        """
        if self._no_color:
            print(link, file=sys.stderr, flush=True)
        else:
            self._stderr.print(link, style="cyan", soft_wrap=True, markup=False)

    def _emit(
        self,
        message: str,
        style: Optional[str] = None,
        label: Optional[str] = None,
        label_style: Optional[str] = None,
        quiet_ok: bool = True,
    ) -> None:
        if self._quiet and not quiet_ok:
            return
        if self._no_color:
            text = f"{label} {message}" if label else message
            print(text, file=sys.stderr, flush=True)
            return
        line = self._stderr.render_str(message, style=style or "", markup=False)
        if label:
            line = self._stderr.render_str(f"{label} ", style=label_style or "") + line
        self._stderr.print(line)


def _plain_lines(data: Any) -> list[str]:
    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, list):
                value = " ".join(str(v) for v in value)
            lines.append(f"{key}\t{value}")
        return lines
    if isinstance(data, list):
        return [str(item) for item in data]
    return [str(data)]


def _rich_grid(data: dict[str, Any]) -> Table:
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="bold")
    grid.add_column()
    for key, value in data.items():
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value) or "-"
        elif value is None:
            value = "-"
        elif isinstance(value, dict):
            value = json.dumps(value, ensure_ascii=False, default=str)
        grid.add_row(key.replace("_", " "), str(value))
    return grid


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """``NO_COLOR`` set to anything, or ``TERM=dumb``."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# -- global instance --------------------------------------------------------

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the installed manager, creating an ``AUTO`` one on first use."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Drop the installed manager.  Tests call this between runs."""
    global _output
    _output = None


def format_response(data: Any) -> None:
    get_output().format_response(data)


def print_data(text: str) -> None:
    get_output().print_data(text)


def info(message: str) -> None:
    get_output().info(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def error(message: str) -> None:
    get_output().error(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def url(link: str) -> None:
    get_output().url(link)
