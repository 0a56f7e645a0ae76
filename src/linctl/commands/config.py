"""Config commands -- view and modify the settings file.

Provides the ``linctl config`` sub-command group for reading, updating,
and resetting :class:`~linctl.models.Settings`, persisted as
``config.json`` in the linctl config directory.  Environment variables
(``LINCTL_CLIENT_ID``, ``LINCTL_CALLBACK_PORT``, ``LINCTL_LOG_LEVEL``)
still override whatever is saved here.
"""

from __future__ import annotations

from typing import Any

import typer
from pydantic import ValidationError as PydanticValidationError

from linctl.config import load_settings, save_settings, settings_path
from linctl.exceptions import ConfigError
from linctl.exit_codes import EXIT_INVALID_USAGE
from linctl.models import Settings
from linctl.output import error, format_response, info, print_data, success


config_app = typer.Typer(no_args_is_help=True)


def _load() -> Settings:
    try:
        return load_settings()
    except ConfigError as exc:
        error(str(exc))
        info("Run `linctl config reset` to start over.")
        raise typer.Exit(code=exc.exit_code) from None


@config_app.command("show")
def config_show() -> None:
    """Show the saved configuration.

    Example::

        linctl config show
        linctl --json config show
    """
    settings = _load()
    info(f"Config file: {settings_path()}")
    format_response(settings.model_dump(mode="json"))


@config_app.command("path")
def config_path() -> None:
    """Print the path of the settings file."""
    print_data(str(settings_path()))


@config_app.command("set")
def config_set(
    key: str = typer.Argument(
        help="Config key (dot notation, e.g. 'oauth.client_id')."
    ),
    value: str = typer.Argument(help="Value to set. Lists are comma-separated."),
) -> None:
    """Set a configuration value.

    Uses dot notation for nested keys.  The value is coerced to the type
    of the existing field; list fields take comma-separated values.  The
    result is validated against :class:`~linctl.models.Settings` before
    saving.

    Raises:
        typer.Exit: With code 2 if the key is unknown, the value cannot be
            coerced, or validation fails.

    Example::

        linctl config set oauth.client_id 1f0c2d...
        linctl config set oauth.port 34800
        linctl config set oauth.scopes read,write
    """
    data = _load().model_dump(mode="json")

    keys = key.split(".")
    target = data
    for k in keys[:-1]:
        if k not in target or not isinstance(target[k], dict):
            error(f"Invalid config key: {key}")
            raise typer.Exit(code=EXIT_INVALID_USAGE)
        target = target[k]

    final_key = keys[-1]
    if final_key not in target or isinstance(target[final_key], dict):
        error(f"Unknown config key: {key}")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    try:
        coerced = _coerce(target[final_key], value)
    except ValueError:
        error(f"Invalid value for {key}: {value}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None
    target[final_key] = coerced

    try:
        settings = Settings.model_validate(data)
    except PydanticValidationError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    save_settings(settings)
    success(f"Set {key} = {coerced}")


def _coerce(current: Any, value: str) -> Any:
    """Convert *value* to the type of *current*.  Raises ``ValueError``."""
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, list):
        items = [item.strip() for item in value.split(",") if item.strip()]
        if current and all(isinstance(c, int) for c in current):
            return [int(item) for item in items]
        return items
    if current is None and value.lower() in ("none", "null", ""):
        return None
    return value


@config_app.command("reset")
def config_reset(ctx: typer.Context) -> None:
    """Reset configuration to defaults.

    Asks for confirmation unless ``--force`` is active.  Stored
    credentials are not touched; use ``linctl auth logout`` for that.

    Example::

        linctl config reset
        linctl --force config reset
    """
    force = ctx.obj.get("force", False) if ctx.obj else False
    if not force:
        confirmed = typer.confirm("Reset all config to defaults?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()

    save_settings(Settings())
    success("Configuration reset to defaults.")
