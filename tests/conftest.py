"""Shared test fixtures for linctl.

Provides reusable fixtures for isolated config environments, output state,
credential backends and token records, and running CLI commands. These
fixtures are automatically discovered by pytest and available to all test
modules without explicit imports.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

import pytest
from rich.logging import RichHandler

from linctl.auth.credential_store import (
    CredentialBackend,
    CredentialStore,
    EnvironmentBackend,
    FileBackend,
    MemoryBackend,
)
from linctl.exceptions import StorageError
from linctl.models import CredentialSource, OAuthConfig, TokenRecord, now_ms
from linctl.output import reset_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time.  When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file").  Resetting forces a fresh manager
    to be created on next use.  The Rich log handler installed by the
    root callback holds the same stale stream, so it is removed too.
    """
    yield
    reset_output()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration and credentials to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path so
    that tests never touch real user config, and clears every LINCTL_* and
    LINEAR_* variable that could leak credentials into a test.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    for var in [
        "LINCTL_CLIENT_ID",
        "LINCTL_CALLBACK_PORT",
        "LINCTL_LOG_LEVEL",
        "LINEAR_ACCESS_TOKEN",
        "LINEAR_REFRESH_TOKEN",
        "LINEAR_EXPIRES_AT",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Credential fixtures
# ---------------------------------------------------------------------------


class FakeSecretStore(CredentialBackend):
    """In-memory stand-in for the OS keyring.

    Attributes:
        blob: The stored blob, or ``None``.
        available: What :meth:`is_available` reports.
        fail_writes: Make :meth:`write` raise :class:`StorageError`.
    """

    source = CredentialSource.SECRET_STORE

    def __init__(self, blob: Optional[str] = None) -> None:
        self.blob = blob
        self.available = True
        self.fail_writes = False
        self.writes = 0

    async def is_available(self) -> bool:
        return self.available

    async def read_raw(self) -> Optional[str]:
        return self.blob

    async def write(self, record: TokenRecord) -> None:
        if self.fail_writes:
            raise StorageError("keyring locked")
        self.writes += 1
        self.blob = record.to_blob()

    async def delete(self) -> None:
        self.blob = None


@pytest.fixture
def fake_secret_store() -> FakeSecretStore:
    """An empty, available fake OS keyring."""
    return FakeSecretStore()


@pytest.fixture
def credential_file(tmp_path: Path) -> FileBackend:
    """A fallback file backend writing under tmp_path."""
    return FileBackend(tmp_path / "credentials" / "oauth-tokens.json")


@pytest.fixture
def make_store(
    fake_secret_store: FakeSecretStore, credential_file: FileBackend
) -> Callable[..., CredentialStore]:
    """Factory for a four-layer store over fakes.

    Call with ``environ={...}`` to populate the environment backend.
    """

    def _make(environ: Optional[dict[str, str]] = None) -> CredentialStore:
        return CredentialStore(
            memory=MemoryBackend(),
            environment=EnvironmentBackend(scopes=["read"], environ=environ or {}),
            secret_store=fake_secret_store,
            fallback_file=credential_file,
        )

    return _make


@pytest.fixture
def make_record() -> Callable[..., TokenRecord]:
    """Factory for token records expiring ``expires_in`` seconds from now."""

    def _make(
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        expires_in: int = 3600,
        scope: frozenset[str] = frozenset({"read", "issues:create"}),
    ) -> TokenRecord:
        return TokenRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now_ms() + expires_in * 1000,
            scope=scope,
        )

    return _make


@pytest.fixture
def oauth_config() -> OAuthConfig:
    """OAuth config with a client id and ephemeral callback port."""
    return OAuthConfig(
        client_id="abc",
        port=0,
        fallback_ports=[],
        callback_timeout=5.0,
        close_grace=0.0,
        authorize_url="https://linear.test/oauth/authorize",
        token_url="https://api.linear.test/oauth/token",
        revoke_url="https://api.linear.test/oauth/revoke",
    )


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
