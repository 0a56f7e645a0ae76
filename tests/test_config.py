"""Tests for linctl.config -- XDG paths, atomic writes, settings, precedence."""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from linctl.config import (
    atomic_write,
    get_config_dir,
    get_credentials_dir,
    get_data_dir,
    load_settings,
    resolve_settings,
    save_settings,
    settings_path,
)
from linctl.exceptions import ConfigError
from linctl.models import OAuthConfig, Settings


# ---------------------------------------------------------------------------
# XDG path resolution
# ---------------------------------------------------------------------------


class TestXDGPaths:
    def test_config_dir_xdg_custom(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("linctl.config.platform.system", lambda: "Linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
        assert get_config_dir() == tmp_path / "cfg" / "linctl"
        assert get_config_dir().is_dir()

    def test_data_dir_xdg_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("linctl.config.platform.system", lambda: "Linux")
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert get_data_dir() == tmp_path / ".local" / "share" / "linctl"

    def test_fallback_platform(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("linctl.config.platform.system", lambda: "Darwin")
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert get_config_dir() == tmp_path / ".linctl"
        assert get_data_dir() == tmp_path / ".linctl" / "data"

    def test_credentials_dir_is_owner_only(self, isolated_config: Path) -> None:
        path = get_credentials_dir()
        assert path == isolated_config / "data" / "linctl" / "credentials"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o700


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------


class TestAtomicWrite:
    def test_creates_file_and_parents(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b" / "file.json"
        atomic_write(target, '{"x": 1}')
        assert target.read_text() == '{"x": 1}'

    def test_applies_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "secret.json"
        atomic_write(target, "s", mode=0o600)
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    def test_no_temp_files_left_on_error(self, tmp_path: Path) -> None:
        target = tmp_path / "file.json"
        with patch("linctl.config.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                atomic_write(target, "data")
        assert list(tmp_path.iterdir()) == []


# ---------------------------------------------------------------------------
# Settings file
# ---------------------------------------------------------------------------


class TestSettingsFile:
    def test_defaults_when_missing(self, isolated_config: Path) -> None:
        settings = load_settings()
        assert settings == Settings()
        assert settings.oauth.port == 34711
        assert settings.oauth.fallback_ports == [34712, 34713]

    def test_round_trip(self, isolated_config: Path) -> None:
        settings = Settings(oauth=OAuthConfig(client_id="abc", port=40000), log_level="DEBUG")
        path = save_settings(settings)
        assert path == settings_path()
        assert json.loads(path.read_text())["oauth"]["client_id"] == "abc"
        assert load_settings() == settings

    def test_invalid_json(self, isolated_config: Path) -> None:
        settings_path().write_text("{nope")
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings()

    def test_invalid_schema(self, isolated_config: Path) -> None:
        settings_path().write_text(json.dumps({"oauth": {"port": "not-a-port"}}))
        with pytest.raises(ConfigError):
            load_settings()


# ---------------------------------------------------------------------------
# Precedence
# ---------------------------------------------------------------------------


class TestResolveSettings:
    def test_file_value(self, isolated_config: Path) -> None:
        save_settings(Settings(oauth=OAuthConfig(client_id="from-file")))
        assert resolve_settings().oauth.client_id == "from-file"

    def test_env_overrides_file(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        save_settings(Settings(oauth=OAuthConfig(client_id="from-file", port=1111)))
        monkeypatch.setenv("LINCTL_CLIENT_ID", "from-env")
        monkeypatch.setenv("LINCTL_CALLBACK_PORT", "2222")
        monkeypatch.setenv("LINCTL_LOG_LEVEL", "info")
        settings = resolve_settings()
        assert settings.oauth.client_id == "from-env"
        assert settings.oauth.port == 2222
        assert settings.log_level == "INFO"

    def test_cli_port_overrides_env(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LINCTL_CLIENT_ID", "from-env")
        monkeypatch.setenv("LINCTL_CALLBACK_PORT", "2222")
        settings = resolve_settings(cli_port=3333)
        assert settings.oauth.client_id == "from-env"
        assert settings.oauth.port == 3333

    def test_bad_port_env(self, isolated_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LINCTL_CALLBACK_PORT", "eighty")
        with pytest.raises(ConfigError, match="LINCTL_CALLBACK_PORT"):
            resolve_settings()


class TestOAuthConfig:
    def test_callback_ports_deduplicated(self) -> None:
        config = OAuthConfig(port=34712, fallback_ports=[34712, 34713])
        assert config.callback_ports == [34712, 34713]

    def test_require_client_id(self) -> None:
        assert OAuthConfig(client_id="abc").require_client_id() == "abc"
        with pytest.raises(ConfigError):
            OAuthConfig().require_client_id()
