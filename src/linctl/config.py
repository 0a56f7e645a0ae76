"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for linctl:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.linctl/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Settings** -- A single :class:`~linctl.models.Settings` JSON file
  holding the OAuth client configuration and log level.
* **Precedence resolution** -- :func:`resolve_settings` merges CLI flags,
  environment variables, the settings file, and defaults into the effective
  configuration.

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) to prevent data loss on crash or power failure.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Optional

from linctl.exceptions import ConfigError
from linctl.models import Settings

_APP_NAME = "linctl"
_CONFIG_FILENAME = "config.json"

ENV_CLIENT_ID = "LINCTL_CLIENT_ID"
ENV_CALLBACK_PORT = "LINCTL_CALLBACK_PORT"
ENV_LOG_LEVEL = "LINCTL_LOG_LEVEL"


# --- Directories ---


def _app_dir(xdg_var: str, xdg_default: tuple[str, ...], fallback: tuple[str, ...]) -> Path:
    """Resolve a linctl directory and create it.

    Linux and the BSDs follow XDG: ``$<xdg_var>/linctl`` or
    ``~/<xdg_default>/linctl``.  Everything else lives under ``~/.linctl``.
    """
    system = platform.system()
    if system == "Linux" or system.endswith("BSD"):
        base = os.environ.get(xdg_var, "")
        root = Path(base) if base else Path.home().joinpath(*xdg_default)
        path = root / _APP_NAME
    else:
        path = Path.home().joinpath(f".{_APP_NAME}", *fallback)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir() -> Path:
    """Settings directory: ``~/.config/linctl`` or ``~/.linctl``."""
    return _app_dir("XDG_CONFIG_HOME", (".config",), ())


def get_data_dir() -> Path:
    """Credentials and crash logs: ``~/.local/share/linctl`` or ``~/.linctl/data``."""
    return _app_dir("XDG_DATA_HOME", (".local", "share"), ("data",))


def get_credentials_dir() -> Path:
    """Owner-only (``0o700``) ``credentials`` directory under the data dir."""
    path = get_data_dir() / "credentials"
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    When *mode* is given it is applied to the temp file before any content
    is written, so secrets are never readable by others, even momentarily.
    On any failure the temp file is cleaned up.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close in the error path
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Settings file ---


def settings_path() -> Path:
    """Path to the settings file."""
    return get_config_dir() / _CONFIG_FILENAME


def load_settings() -> Settings:
    """Load settings from the XDG config directory.

    Returns:
        The deserialised :class:`~linctl.models.Settings`. If the file does
        not exist, a default instance is returned.

    Raises:
        ConfigError: If the file exists but contains invalid JSON or fails
            Pydantic validation.
    """
    path = settings_path()
    if not path.is_file():
        return Settings()
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text)
        return Settings.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings at {path}: {exc}") from exc


def save_settings(settings: Settings) -> Path:
    """Persist settings atomically to disk.

    Args:
        settings: The settings to save.

    Returns:
        The path written to.
    """
    path = settings_path()
    data = settings.model_dump(mode="json")
    atomic_write(path, json.dumps(data, indent=2) + "\n")
    return path


# --- Precedence resolution ---


def resolve_settings(cli_port: Optional[int] = None) -> Settings:
    """Resolve settings with full precedence chain.

    Precedence (high to low):
        1. CLI flags (``--port``, passed as ``cli_port``)
        2. Environment variables (``LINCTL_CLIENT_ID``,
           ``LINCTL_CALLBACK_PORT``, ``LINCTL_LOG_LEVEL``)
        3. Settings file (``~/.config/linctl/config.json``)
        4. Defaults

    Returns:
        The effective :class:`~linctl.models.Settings`.

    Raises:
        ConfigError: If the settings file is invalid or
            ``LINCTL_CALLBACK_PORT`` is not an integer.
    """
    settings = load_settings()
    oauth = settings.oauth

    env_client_id = os.environ.get(ENV_CLIENT_ID)
    if env_client_id:
        oauth.client_id = env_client_id

    env_port = os.environ.get(ENV_CALLBACK_PORT)
    if env_port:
        try:
            oauth.port = int(env_port)
        except ValueError:
            raise ConfigError(
                f"{ENV_CALLBACK_PORT} must be an integer, got: {env_port!r}"
            ) from None
    if cli_port is not None:
        oauth.port = cli_port

    env_log_level = os.environ.get(ENV_LOG_LEVEL)
    if env_log_level:
        settings.log_level = env_log_level.upper()

    return settings
