"""Sign-in lifecycle: login, steady-state token access, logout.

:class:`AuthOrchestrator` ties the pieces together and tracks where the
user stands::

    UNAUTHENTICATED -> AUTHORIZING -> AUTHENTICATED <-> EXPIRED
           ^                |               |
           +----------------+---------------+   (failure, invalid_grant, logout)

It owns one :class:`~linctl.auth.credential_store.CredentialStore` for its
whole lifetime; nothing in this package keeps module-level token state.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TextIO

from linctl.auth.authorize import build_authorization_url, build_redirect_uri
from linctl.auth.callback import CallbackListener, CallbackResult, ManualCodeInput
from linctl.auth.credential_store import CredentialStore, create_default_store
from linctl.auth.pkce import create_session
from linctl.auth.refresh import RefreshCoordinator
from linctl.auth.token_client import TokenClient
from linctl.exceptions import CallbackBindError, ReauthenticationRequired, TimeoutError_
from linctl.models import (
    AuthState,
    AuthStatus,
    CredentialSource,
    OAuthConfig,
    PkceSession,
    TokenRecord,
    now_ms,
)

logger = logging.getLogger(__name__)

BrowserOpener = Callable[[str], bool]


class AuthOrchestrator:
    """Drive the OAuth flow and hand out valid access tokens.

    Args:
        config: OAuth client configuration.
        store: Credential store.  Defaults to the standard four-layer store.
        token_client: Token endpoint client.  Defaults to one built from
            *config*; an injected client is not closed by :meth:`aclose`.
        browser: Opens a URL in the user's browser.  Defaults to
            :func:`webbrowser.open`.

    Example::

        orchestrator = AuthOrchestrator(settings.oauth)
        try:
            token = await orchestrator.get_valid_access_token()
            if token is None:
                await orchestrator.login()
        finally:
            await orchestrator.aclose()
    """

    def __init__(
        self,
        config: OAuthConfig,
        store: Optional[CredentialStore] = None,
        token_client: Optional[TokenClient] = None,
        browser: Optional[BrowserOpener] = None,
    ) -> None:
        self._config = config
        self._store = store if store is not None else create_default_store(config.scopes)
        self._owns_client = token_client is None
        self._client = token_client if token_client is not None else TokenClient(config)
        self._browser = browser or webbrowser.open
        self._coordinator = RefreshCoordinator(self._store, self._client)
        self._state = AuthState.UNAUTHENTICATED
        self._session: Optional[PkceSession] = None

    @property
    def state(self) -> AuthState:
        """Current lifecycle state."""
        return self._state

    @property
    def store(self) -> CredentialStore:
        """The credential store this orchestrator owns."""
        return self._store

    async def aclose(self) -> None:
        """Release the HTTP client if this orchestrator created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Login
    # ------------------------------------------------------------------ #

    async def login(
        self,
        open_browser: bool = True,
        manual_input: Optional[TextIO] = None,
        on_authorization_url: Optional[Callable[[str], Any]] = None,
        timeout: Optional[float] = None,
    ) -> TokenRecord:
        """Run the authorization code flow and store the resulting tokens.

        The loopback listener and, when *manual_input* is given, a pasted
        redirect URL or code race each other; the loser is cancelled.  If no
        callback port can be bound, the flow continues with manual input
        alone when it is available.

        Args:
            open_browser: Open the authorization URL in a browser.
            manual_input: Stream to read a pasted redirect URL or code from.
            on_authorization_url: Called with the authorization URL before
                waiting, e.g. to print it.
            timeout: Seconds to wait for the redirect.  Defaults to
                ``config.callback_timeout``.

        Returns:
            The stored token record.

        Raises:
            ConfigError: No client id is configured.
            CallbackBindError: No port could be bound and there is no
                manual input.
            TimeoutError_: Nothing arrived in time.
            ProtocolError: Provider error, state mismatch or malformed
                token response.
            LoginCancelled: The user cancelled at the prompt.
            NetworkError: The code exchange failed.
        """
        config = self._config
        config.require_client_id()
        wait_for = config.callback_timeout if timeout is None else timeout

        self._state = AuthState.AUTHORIZING
        session = create_session(port=config.port)
        listener: Optional[CallbackListener] = CallbackListener(
            session.state,
            config.callback_ports,
            host=config.bind_host,
            path=config.callback_path,
            close_grace=config.close_grace,
        )
        try:
            try:
                port = listener.bind()
            except CallbackBindError as exc:
                if manual_input is None:
                    raise
                logger.warning("%s; continuing with manual code entry only", exc)
                listener = None
                port = config.port
            self._session = session = session.model_copy(update={"port": port})

            redirect_uri = build_redirect_uri(config, port)
            url = build_authorization_url(config, redirect_uri, session.challenge, session.state)
            if on_authorization_url is not None:
                on_authorization_url(url)
            if open_browser:
                await self._open_browser(url)

            result = await self._await_code(session, listener, manual_input, wait_for)
            record = await self._client.exchange_code_for_token(
                result.code, session.verifier, redirect_uri
            )
            await self._store.store(record)
        except BaseException:
            self._state = AuthState.UNAUTHENTICATED
            raise
        finally:
            self._session = None
            if listener is not None:
                await listener.aclose()

        self._state = AuthState.AUTHENTICATED
        logger.info("Signed in (scopes: %s)", " ".join(sorted(record.scope)) or "none")
        return record

    async def re_authenticate(self, **login_kwargs: Any) -> TokenRecord:
        """Sign out, then sign in again with *login_kwargs*."""
        await self.logout()
        return await self.login(**login_kwargs)

    # ------------------------------------------------------------------ #
    # Steady state
    # ------------------------------------------------------------------ #

    async def get_valid_access_token(
        self, buffer_seconds: Optional[float] = None
    ) -> Optional[str]:
        """Return a usable access token, refreshing it when close to expiry.

        Returns:
            The access token, or ``None`` when not signed in.

        Raises:
            ReauthenticationRequired: The refresh token is dead and stored
                credentials were cleared.
            NetworkError: Refreshing failed; retry later.
        """
        buffer = self._config.refresh_buffer if buffer_seconds is None else buffer_seconds
        try:
            token = await self._coordinator.get_valid_access_token(buffer)
        except ReauthenticationRequired:
            self._state = AuthState.UNAUTHENTICATED
            raise
        self._state = AuthState.AUTHENTICATED if token is not None else AuthState.UNAUTHENTICATED
        return token

    async def status(self) -> Optional[AuthStatus]:
        """Describe the stored credential without touching the network.

        Returns:
            An :class:`~linctl.models.AuthStatus`, or ``None`` when nothing
            is stored.
        """
        found = await self._store.lookup()
        if found is None:
            self._state = AuthState.UNAUTHENTICATED
            return None
        record, source = found
        now = now_ms()
        expired = record.expires_within(0, now=now)
        self._state = AuthState.EXPIRED if expired else AuthState.AUTHENTICATED
        expires_at = datetime.fromtimestamp(record.expires_at / 1000, tz=timezone.utc)
        return AuthStatus(
            authenticated=not expired,
            expires_at=expires_at.isoformat(),
            expires_in=max(0, (record.expires_at - now) // 1000),
            scopes=sorted(record.scope),
            source=source,
        )

    # ------------------------------------------------------------------ #
    # Logout
    # ------------------------------------------------------------------ #

    async def logout(self, revoke: bool = True) -> bool:
        """Forget the stored credentials.

        Revokes the refresh token at the provider first when *revoke* is
        set.  Revocation is best-effort.  Environment credentials are
        neither revoked nor removable.

        Returns:
            ``True`` if no credentials remain anywhere, ``False`` when
            environment variables still supply some.
        """
        if revoke:
            found = await self._store.lookup()
            if found is not None and found[1] is not CredentialSource.ENVIRONMENT:
                await self._client.revoke_token(found[0].refresh_token, "refresh_token")
        cleared = await self._store.clear()
        self._state = AuthState.UNAUTHENTICATED
        self._session = None
        return cleared

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _open_browser(self, url: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            opened = await loop.run_in_executor(None, self._browser, url)
        except webbrowser.Error as exc:
            logger.warning("Could not open a browser: %s", exc)
            return
        if not opened:
            logger.warning("Could not open a browser; open the authorization URL manually")

    async def _await_code(
        self,
        session: PkceSession,
        listener: Optional[CallbackListener],
        manual_input: Optional[TextIO],
        timeout: float,
    ) -> CallbackResult:
        tasks: list[asyncio.Task[CallbackResult]] = []
        if listener is not None:
            tasks.append(asyncio.create_task(listener.wait(timeout)))
        if manual_input is not None:
            reader = ManualCodeInput(session.state, stream=manual_input)
            tasks.append(asyncio.create_task(reader.read()))

        try:
            done, _ = await asyncio.wait(
                tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if not done:
            raise TimeoutError_(f"No authorization code received within {timeout:.0f} seconds")
        winner = next(t for t in tasks if t in done)
        return winner.result()
