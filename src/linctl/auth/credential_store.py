"""Layered credential store for the OAuth token record.

Credentials live in up to four backends, probed in this order:

1. :class:`MemoryBackend` -- the current process only.
2. :class:`EnvironmentBackend` -- ``LINEAR_ACCESS_TOKEN``,
   ``LINEAR_REFRESH_TOKEN`` and ``LINEAR_EXPIRES_AT``.  Read-only.
3. :class:`KeyringSecretStore` -- the OS secret store via :mod:`keyring`
   (service ``linctl``, account ``oauth-tokens``).
4. :class:`FileBackend` -- ``<data_dir>/credentials/oauth-tokens.json``,
   written atomically with ``0o600`` permissions.

The first valid record wins.  A record read from a persistent backend is
promoted into memory so later reads in the same process are free.  Corrupt
records are purged where they were found.

A single :class:`asyncio.Lock` serialises :meth:`CredentialStore.get`,
:meth:`CredentialStore.store` and :meth:`CredentialStore.clear` within one
process.  Nothing synchronises separate processes.

See Also:
    :class:`~linctl.auth.refresh.RefreshCoordinator` -- writes rotated records.
    :class:`~linctl.auth.orchestrator.AuthOrchestrator` -- owns the store.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import keyring
import keyring.errors

from linctl.config import atomic_write, get_credentials_dir
from linctl.exceptions import StorageError, ValidationError
from linctl.models import CredentialSource, TokenRecord

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "linctl"
KEYRING_ACCOUNT = "oauth-tokens"
CREDENTIALS_FILENAME = "oauth-tokens.json"

ENV_ACCESS_TOKEN = "LINEAR_ACCESS_TOKEN"
ENV_REFRESH_TOKEN = "LINEAR_REFRESH_TOKEN"
ENV_EXPIRES_AT = "LINEAR_EXPIRES_AT"


# ------------------------------------------------------------------ #
# Backends
# ------------------------------------------------------------------ #


class CredentialBackend(ABC):
    """One place a :class:`~linctl.models.TokenRecord` can live.

    Backends read opaque JSON blobs and write whole records; parsing and
    validity checks belong to :class:`CredentialStore`.  Failures are
    reported as :class:`~linctl.exceptions.StorageError`.
    """

    source: CredentialSource

    @abstractmethod
    async def read_raw(self) -> Optional[str]:
        """Return the stored blob, or ``None`` if nothing is stored."""

    @abstractmethod
    async def write(self, record: TokenRecord) -> None:
        """Replace the stored record."""

    @abstractmethod
    async def delete(self) -> None:
        """Remove the stored record.  A missing record is not an error."""

    async def is_available(self) -> bool:
        """Whether the backend can be used at all on this machine."""
        return True


class MemoryBackend(CredentialBackend):
    """In-process cache.  Lives exactly as long as its owning store."""

    source = CredentialSource.MEMORY

    def __init__(self) -> None:
        self._record: Optional[TokenRecord] = None

    async def read_raw(self) -> Optional[str]:
        return self._record.to_blob() if self._record is not None else None

    async def read(self) -> Optional[TokenRecord]:
        return self._record

    async def write(self, record: TokenRecord) -> None:
        self._record = record

    async def delete(self) -> None:
        self._record = None


class EnvironmentBackend(CredentialBackend):
    """Read-only credentials injected through environment variables.

    All three variables must be set.  An incomplete set is ignored, as is a
    ``LINEAR_EXPIRES_AT`` that is not an integer (with a warning).

    Args:
        scopes: Scopes to attribute to the record; the environment has no
            way to express them.
        environ: Mapping to read from.  Defaults to :data:`os.environ`.
    """

    source = CredentialSource.ENVIRONMENT

    def __init__(
        self,
        scopes: Sequence[str] = (),
        environ: Optional[dict[str, str]] = None,
    ) -> None:
        self._scopes = frozenset(scopes)
        self._environ = environ

    @property
    def _env(self) -> Any:
        return os.environ if self._environ is None else self._environ

    def is_set(self) -> bool:
        """Whether any of the credential variables is present."""
        env = self._env
        return any(env.get(name) for name in (ENV_ACCESS_TOKEN, ENV_REFRESH_TOKEN, ENV_EXPIRES_AT))

    async def read_raw(self) -> Optional[str]:
        record = self._read_record()
        return record.to_blob() if record is not None else None

    def _read_record(self) -> Optional[TokenRecord]:
        env = self._env
        access = env.get(ENV_ACCESS_TOKEN, "")
        refresh = env.get(ENV_REFRESH_TOKEN, "")
        expires = env.get(ENV_EXPIRES_AT, "")
        if not (access and refresh and expires):
            return None
        try:
            expires_at = int(expires)
        except ValueError:
            logger.warning("Ignoring %s: not an integer (%r)", ENV_EXPIRES_AT, expires)
            return None
        return TokenRecord(
            access_token=access,
            refresh_token=refresh,
            expires_at=expires_at,
            scope=self._scopes,
        )

    async def write(self, record: TokenRecord) -> None:
        raise StorageError("Environment credentials are read-only")

    async def delete(self) -> None:
        raise StorageError("Environment credentials are read-only")


class KeyringSecretStore(CredentialBackend):
    """OS secret store (macOS Keychain, Secret Service, Windows Credential Locker).

    Every :mod:`keyring` call runs in the default executor because some
    backends block on D-Bus or a system prompt.  Availability is probed once
    per instance and cached.

    Args:
        service: Keyring service name.
        account: Keyring account (user) name.
    """

    source = CredentialSource.SECRET_STORE

    def __init__(self, service: str = KEYRING_SERVICE, account: str = KEYRING_ACCOUNT) -> None:
        self._service = service
        self._account = account
        self._available: Optional[bool] = None

    async def is_available(self) -> bool:
        if self._available is None:
            self._available = _keyring_usable()
            if not self._available:
                logger.debug("No usable OS keyring backend")
        return self._available

    async def read_raw(self) -> Optional[str]:
        return await self._call(keyring.get_password, self._service, self._account)

    async def write(self, record: TokenRecord) -> None:
        await self._call(keyring.set_password, self._service, self._account, record.to_blob())

    async def delete(self) -> None:
        try:
            await self._call(keyring.delete_password, self._service, self._account)
        except StorageError as exc:
            if isinstance(exc.__cause__, keyring.errors.PasswordDeleteError):
                return
            raise

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, func, *args)
        except keyring.errors.KeyringError as exc:
            raise StorageError(f"OS keyring error: {exc}") from exc


def _keyring_usable() -> bool:
    """Return ``False`` when keyring resolved to its fail or null backend."""
    try:
        backend = keyring.get_keyring()
    except keyring.errors.KeyringError:
        return False
    module = type(backend).__module__
    return not module.startswith(("keyring.backends.fail", "keyring.backends.null"))


class FileBackend(CredentialBackend):
    """Plain JSON file readable only by the owner.

    The last resort when no OS secret store is available.  The token is not
    encrypted; protection is the ``0o600`` file mode inside a ``0o700``
    directory.

    Args:
        path: File location.  Defaults to
            ``<data_dir>/credentials/oauth-tokens.json``.
    """

    source = CredentialSource.FALLBACK_FILE

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        """The credentials file location."""
        if self._path is None:
            self._path = get_credentials_dir() / CREDENTIALS_FILENAME
        return self._path

    async def read_raw(self) -> Optional[str]:
        try:
            path = self.path
            if not path.is_file():
                return None
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot read credentials file: {exc}") from exc

    async def write(self, record: TokenRecord) -> None:
        try:
            path = self.path
            path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            atomic_write(path, record.to_blob() + "\n", mode=0o600)
        except OSError as exc:
            raise StorageError(f"Cannot write credentials file: {exc}") from exc

    async def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot delete credentials file: {exc}") from exc


# ------------------------------------------------------------------ #
# Store
# ------------------------------------------------------------------ #


class CredentialStore:
    """Read and write the token record across all backends.

    Args:
        memory: In-process cache.
        environment: Read-only environment source, or ``None`` to skip it.
        secret_store: OS keyring backend, or ``None`` to skip it.
        fallback_file: Plain file backend, or ``None`` to skip it.

    Example::

        store = CredentialStore(fallback_file=FileBackend(tmp_path / "t.json"))
        await store.store(record)
        assert await store.get() == record
    """

    def __init__(
        self,
        memory: Optional[MemoryBackend] = None,
        environment: Optional[EnvironmentBackend] = None,
        secret_store: Optional[CredentialBackend] = None,
        fallback_file: Optional[CredentialBackend] = None,
    ) -> None:
        self._memory = memory or MemoryBackend()
        self._environment = environment
        self._secret_store = secret_store
        self._fallback_file = fallback_file
        self._lock = asyncio.Lock()

    @property
    def _persistent(self) -> list[CredentialBackend]:
        return [b for b in (self._secret_store, self._fallback_file) if b is not None]

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def lookup(self) -> Optional[tuple[TokenRecord, CredentialSource]]:
        """Return the first valid record and where it came from.

        Returns:
            ``(record, source)``, or ``None`` when no backend holds a valid
            record.
        """
        async with self._lock:
            return await self._lookup_locked()

    async def get(self) -> Optional[TokenRecord]:
        """Return the first valid record, or ``None``."""
        found = await self.lookup()
        return found[0] if found is not None else None

    async def store(self, record: TokenRecord) -> CredentialSource:
        """Persist *record*, replacing whatever was stored.

        Memory is always updated.  The record then goes to the OS secret
        store when one is available; otherwise (or if that write fails) to
        the fallback file, with a warning since that file is not encrypted.

        Returns:
            The most durable backend the record reached.  ``MEMORY`` means
            both persistent writes failed; the failure is logged, not raised.

        Raises:
            ValidationError: If *record* is not valid.
        """
        if not record.is_valid:
            raise ValidationError("Refusing to store an incomplete token record")

        async with self._lock:
            await self._memory.write(record)

            keyring_failed = False
            if self._secret_store is not None and await self._secret_store.is_available():
                try:
                    await self._secret_store.write(record)
                except StorageError as exc:
                    logger.warning("Could not save credentials to the OS keyring: %s", exc)
                    keyring_failed = True
                else:
                    await self._best_effort_delete(self._fallback_file)
                    logger.debug("Credentials saved to the OS keyring")
                    return CredentialSource.SECRET_STORE

            if self._fallback_file is not None:
                try:
                    await self._fallback_file.write(record)
                except StorageError as exc:
                    logger.warning("Could not save credentials to file: %s", exc)
                else:
                    if keyring_failed:
                        # The keyring is probed first; a stale entry there would shadow this one.
                        await self._best_effort_delete(self._secret_store)
                    logger.warning(
                        "OS keyring unavailable; credentials saved unencrypted to %s "
                        "(readable by your user only)",
                        getattr(self._fallback_file, "path", "the fallback file"),
                    )
                    return CredentialSource.FALLBACK_FILE

            logger.warning("Credentials are kept in memory only and will be lost on exit")
            return CredentialSource.MEMORY

    async def clear(self) -> bool:
        """Remove stored credentials from every writable backend.

        Never raises.  Persistent deletes are best-effort and logged on
        failure.

        Returns:
            ``True`` if nothing remains.  ``False`` when environment
            credentials are still set, since they cannot be cleared from
            here.
        """
        async with self._lock:
            await self._memory.delete()
            for backend in self._persistent:
                await self._best_effort_delete(backend)

        if self._environment is not None and self._environment.is_set():
            logger.warning(
                "Credentials from %s / %s are still set in the environment; "
                "unset them to sign out completely",
                ENV_ACCESS_TOKEN,
                ENV_REFRESH_TOKEN,
            )
            return False
        return True

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _lookup_locked(self) -> Optional[tuple[TokenRecord, CredentialSource]]:
        cached = await self._memory.read()
        if cached is not None and cached.is_valid:
            return cached, CredentialSource.MEMORY

        for backend in self._probe_order():
            try:
                if not await backend.is_available():
                    continue
                blob = await backend.read_raw()
            except StorageError as exc:
                logger.warning("Skipping %s credentials: %s", backend.source.value, exc)
                continue
            if blob is None:
                continue

            record = TokenRecord.from_blob(blob)
            if record is None:
                if backend.source.writable:
                    logger.warning("Purging corrupt credentials from %s", backend.source.value)
                    await self._best_effort_delete(backend)
                else:
                    logger.warning("Ignoring invalid credentials from %s", backend.source.value)
                continue

            if backend.source is not CredentialSource.ENVIRONMENT:
                await self._memory.write(record)
            logger.debug("Credentials loaded from %s", backend.source.value)
            return record, backend.source
        return None

    def _probe_order(self) -> list[CredentialBackend]:
        backends: list[Optional[CredentialBackend]] = [
            self._environment,
            self._secret_store,
            self._fallback_file,
        ]
        return [b for b in backends if b is not None]

    @staticmethod
    async def _best_effort_delete(backend: Optional[CredentialBackend]) -> None:
        if backend is None:
            return
        try:
            if await backend.is_available():
                await backend.delete()
        except StorageError as exc:
            logger.warning("Could not remove %s credentials: %s", backend.source.value, exc)


def create_default_store(scopes: Sequence[str] = ()) -> CredentialStore:
    """Build the standard four-layer store.

    Args:
        scopes: Scopes attributed to environment-supplied credentials.
    """
    return CredentialStore(
        memory=MemoryBackend(),
        environment=EnvironmentBackend(scopes=scopes),
        secret_store=KeyringSecretStore(),
        fallback_file=FileBackend(),
    )
