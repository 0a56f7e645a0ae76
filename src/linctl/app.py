"""The ``linctl`` command and its console-script entry point.

:data:`app` is the root Typer application with the ``auth`` and ``config``
groups mounted.  :func:`main_callback` turns the global flags into an
:class:`~linctl.output.OutputManager` and a Rich log handler.  :func:`main`
maps :class:`~linctl.exceptions.LinctlError` to exit codes; any other
exception leaves a crash log under the data directory.
"""

from __future__ import annotations

import logging
import platform
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer
from rich.logging import RichHandler

from linctl import __version__
from linctl.commands.auth import auth_app
from linctl.commands.config import config_app
from linctl.config import get_data_dir, resolve_settings
from linctl.exceptions import ConfigError, LinctlError
from linctl.exit_codes import EXIT_GENERIC_FAILURE, EXIT_INTERRUPTED
from linctl.output import OutputFormat, OutputManager, error, get_output, set_output


app = typer.Typer(
    name="linctl",
    help="Command-line client for Linear.",
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)

app.add_typer(auth_app, name="auth", help="Sign in to Linear and manage OAuth tokens.")
app.add_typer(config_app, name="config", help="Configuration management.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"linctl {__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    """Route library logging through Rich on stderr.

    ``--verbose`` forces DEBUG; otherwise ``LINCTL_LOG_LEVEL`` or the
    settings file decide, defaulting to WARNING.
    """
    level_name = "WARNING"
    if verbose:
        level_name = "DEBUG"
    else:
        try:
            level_name = resolve_settings().log_level
        except ConfigError:
            # Reported by the command that actually needs the settings.
            pass
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.WARNING

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(
        RichHandler(
            console=get_output().stderr_console,
            show_time=False,
            show_path=verbose,
            rich_tracebacks=True,
        )
    )
    root.setLevel(level)
    # httpx logs full request URLs at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.getLogger("httpcore").setLevel(max(level, logging.WARNING))


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True,
        help="Print the linctl version.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit status and config as JSON."),
    plain_output: bool = typer.Option(False, "--plain", help="Emit tab-separated text."),
    no_color: bool = typer.Option(False, "--no-color", help="Never use colour."),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Only print data, warnings and errors."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug details to stderr."),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation."),
    no_input: bool = typer.Option(
        False, "--no-input", help="Never read from the terminal (no pasted redirect URL)."
    ),
) -> None:
    """Install output and logging from the global flags.

    Shared flags are kept in ``ctx.obj`` for the sub-commands.
    """
    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    else:
        fmt = OutputFormat.AUTO

    set_output(OutputManager(format=fmt, no_color=no_color, quiet=quiet))
    _configure_logging(verbose)

    ctx.obj = {"force": force, "no_input": no_input}


def _setup_signal_handlers() -> None:
    def _on_sigint(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nAborted.\n")
        sys.exit(EXIT_INTERRUPTED)

    signal.signal(signal.SIGINT, _on_sigint)


def _write_crash_log(exc: Exception) -> Path:
    """Save the traceback under ``<data_dir>/logs`` and return its path."""
    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"crash-{datetime.now():%Y%m%d-%H%M%S}.log"
    header = f"linctl {__version__} on Python {platform.python_version()} ({platform.system()})\n\n"
    log_path.write_text(header + "".join(traceback.format_exception(exc)), encoding="utf-8")
    return log_path


def main(argv: Optional[list[str]] = None) -> None:
    """Console-script entry point.

    Known :class:`~linctl.exceptions.LinctlError` failures exit with their
    own code.  Anything else leaves a crash log and exits 1.
    """
    _setup_signal_handlers()
    try:
        app(args=argv)
    except KeyboardInterrupt:
        sys.stderr.write("\nAborted.\n")
        sys.exit(EXIT_INTERRUPTED)
    except LinctlError as exc:
        error(str(exc))
        sys.exit(exc.exit_code)
    except Exception as exc:
        log_path = _write_crash_log(exc)
        error(f"linctl crashed. Details were saved to {log_path}")
        sys.exit(EXIT_GENERIC_FAILURE)
