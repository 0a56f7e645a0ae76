"""Single-flight access token refresh.

The provider rotates refresh tokens: a successful refresh kills the token
it was given.  Two concurrent refreshes with the same token therefore end
with the second one answered ``invalid_grant``, which would wrongly throw
the user out.  :class:`RefreshCoordinator` makes every concurrent caller in
the process await one shared refresh instead.

The new record is written to the credential store inside the shared task,
so it is stored before any waiter resumes.  There is no cross-process
lock; two CLI processes can still race each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from linctl.auth.credential_store import CredentialStore
from linctl.auth.token_client import TokenClient
from linctl.exceptions import InvalidGrantError, ReauthenticationRequired
from linctl.models import TokenRecord

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SECONDS = 60


class RefreshCoordinator:
    """Refresh the stored token at most once at a time.

    Args:
        store: Where the current record lives and where the next one goes.
        token_client: Performs the refresh grant.

    Example::

        coordinator = RefreshCoordinator(store, client)
        token = await coordinator.get_valid_access_token()
        if token is None:
            ...  # not signed in
    """

    def __init__(self, store: CredentialStore, token_client: TokenClient) -> None:
        self._store = store
        self._client = token_client
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.Task[TokenRecord]] = None

    @property
    def is_refreshing(self) -> bool:
        """Whether a refresh request is in flight."""
        return self._pending is not None and not self._pending.done()

    async def refresh(self, stale: TokenRecord) -> TokenRecord:
        """Return a record newer than *stale*, refreshing if nobody else has.

        Concurrent callers share one in-flight refresh.  A caller arriving
        after another one already rotated the token gets the stored record
        without a network call.  Cancelling one caller does not cancel the
        shared refresh.

        Args:
            stale: The record the caller found expired.

        Returns:
            The current record.

        Raises:
            ReauthenticationRequired: The refresh token is dead; the store
                has been cleared.
            NetworkError: The refresh request failed; nothing was changed.
            ProtocolError: The provider answered with a malformed response.
        """
        async with self._lock:
            task = self._pending
            if task is None:
                current = await self._store.get()
                if current is not None and current.refresh_token != stale.refresh_token:
                    logger.debug("Token was already refreshed by another caller")
                    return current
                task = asyncio.create_task(self._run(stale))
                self._pending = task
            else:
                logger.debug("Joining in-flight token refresh")
        return await asyncio.shield(task)

    async def get_valid_access_token(
        self, buffer_seconds: float = DEFAULT_BUFFER_SECONDS
    ) -> Optional[str]:
        """Return an access token valid for at least *buffer_seconds*.

        A token that is not close to expiry is returned straight from the
        store without any network traffic.

        Returns:
            The access token, or ``None`` when no credentials are stored.

        Raises:
            ReauthenticationRequired: The refresh token is dead.
            NetworkError: Refreshing failed; retry later.
        """
        record = await self._store.get()
        if record is None:
            return None
        if not record.expires_within(buffer_seconds):
            return record.access_token
        logger.debug("Access token expires within %ss; refreshing", buffer_seconds)
        fresh = await self.refresh(record)
        return fresh.access_token

    async def _run(self, stale: TokenRecord) -> TokenRecord:
        try:
            try:
                record = await self._client.refresh_access_token(stale.refresh_token)
            except InvalidGrantError as exc:
                logger.warning("Refresh token was rejected; removing stored credentials")
                await self._store.clear()
                raise ReauthenticationRequired(
                    "Your Linear session has expired or was revoked. "
                    "Run `linctl auth login` to sign in again."
                ) from exc
            await self._store.store(record)
            return record
        finally:
            self._pending = None
