"""Token endpoint client: code exchange, refresh, and revocation.

:class:`TokenClient` is stateless apart from its HTTP connection pool.  It
never stores anything; turning a response into stored credentials is the
job of the :class:`~linctl.auth.refresh.RefreshCoordinator` and the
:class:`~linctl.auth.orchestrator.AuthOrchestrator`.

linctl is a *public* client: requests carry ``client_id`` and, for the code
exchange, the PKCE ``code_verifier``.  No client secret is ever sent.

Error mapping:

* transport failures, timeouts and non-2xx responses -> :class:`NetworkError`
  (with ``status_code`` and ``body`` when a response arrived)
* ``invalid_grant`` on refresh -> :class:`InvalidGrantError`
* 2xx responses that are not JSON or lack ``access_token``,
  ``refresh_token`` or a positive, finite ``expires_in`` -> :class:`ProtocolError`
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

import httpx

from linctl.exceptions import InvalidGrantError, NetworkError, ProtocolError
from linctl.models import OAuthConfig, TokenRecord, now_ms

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("access_token", "refresh_token", "expires_in")


class TokenClient:
    """Async client for the provider's token and revoke endpoints.

    Args:
        config: OAuth client configuration (endpoints, ``client_id``,
            ``request_timeout``).
        http_client: Optional pre-built :class:`httpx.AsyncClient`.  When
            given, the caller owns it and :meth:`aclose` leaves it open.

    Example::

        async with TokenClient(config) as client:
            record = await client.refresh_access_token(old.refresh_token)
    """

    def __init__(
        self,
        config: OAuthConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.request_timeout)

    async def __aenter__(self) -> TokenClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Grants
    # ------------------------------------------------------------------ #

    async def exchange_code_for_token(
        self, code: str, verifier: str, redirect_uri: str
    ) -> TokenRecord:
        """Exchange an authorization code for a token record.

        Args:
            code: The one-time authorization code from the redirect.
            verifier: The PKCE code verifier of the session.
            redirect_uri: The exact redirect URI used in the authorize request.

        Returns:
            A fresh :class:`~linctl.models.TokenRecord`.

        Raises:
            NetworkError: On transport failure or a non-2xx response.
            ProtocolError: If the response is malformed.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self._config.require_client_id(),
            "code_verifier": verifier,
        }
        logger.debug("Exchanging authorization code (redirect_uri=%s)", redirect_uri)
        issued_at = now_ms()
        response = await self._post(self._config.token_url, data, "Token exchange")
        if not response.is_success:
            raise self._status_error("Token exchange", response)
        record = TokenRecord.from_token_response(
            self._parse_token_body("Token exchange", response), issued_at
        )
        logger.debug("Token exchange succeeded (expires_at=%d)", record.expires_at)
        return record

    async def refresh_access_token(self, refresh_token: str) -> TokenRecord:
        """Exchange a refresh token for the next token record.

        The provider rotates refresh tokens: after this call succeeds,
        *refresh_token* is dead and only the returned record's
        ``refresh_token`` will work.

        Raises:
            InvalidGrantError: If the provider answers ``invalid_grant``.
            NetworkError: On transport failure or any other non-2xx response.
            ProtocolError: If the response is malformed.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._config.require_client_id(),
        }
        logger.debug("Refreshing access token")
        issued_at = now_ms()
        response = await self._post(self._config.token_url, data, "Token refresh")
        if not response.is_success:
            payload = _json_or_none(response)
            if isinstance(payload, dict) and payload.get("error") == "invalid_grant":
                description = payload.get("error_description") or "refresh token expired or revoked"
                logger.debug("Token refresh rejected with invalid_grant")
                raise InvalidGrantError(f"invalid_grant: {description}")
            raise self._status_error("Token refresh", response)
        record = TokenRecord.from_token_response(
            self._parse_token_body("Token refresh", response), issued_at
        )
        logger.debug("Token refresh succeeded (expires_at=%d)", record.expires_at)
        return record

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> bool:
        """Revoke *token* at the provider.  Best-effort: never raises.

        Args:
            token: An access or refresh token.
            token_type_hint: Optional ``access_token`` / ``refresh_token`` hint.

        Returns:
            ``True`` if the provider acknowledged the revocation.
        """
        data = {"token": token, "client_id": self._config.client_id or ""}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        try:
            response = await self._client.post(
                self._config.revoke_url,
                data=data,
                timeout=self._config.request_timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Token revocation failed: %s", exc)
            return False
        if not response.is_success:
            logger.warning("Token revocation failed with status %d", response.status_code)
            return False
        logger.debug("Token revoked (hint=%s)", token_type_hint)
        return True

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _post(self, url: str, data: dict[str, str], action: str) -> httpx.Response:
        """POST a form-encoded body, mapping transport failures to NetworkError."""
        try:
            return await self._client.post(
                url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._config.request_timeout,
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{action} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{action} failed: {exc}") from exc

    @staticmethod
    def _status_error(action: str, response: httpx.Response) -> NetworkError:
        body = response.text
        logger.debug("%s failed with status %d", action, response.status_code)
        return NetworkError(
            f"{action} failed with status {response.status_code}: {body[:200]}",
            status_code=response.status_code,
            body=body,
        )

    @staticmethod
    def _parse_token_body(action: str, response: httpx.Response) -> dict[str, Any]:
        payload = _json_or_none(response)
        if not isinstance(payload, dict):
            raise ProtocolError(f"{action} response is not a JSON object")
        missing = [name for name in _REQUIRED_FIELDS if not payload.get(name)]
        if missing:
            raise ProtocolError(
                f"{action} response missing required field(s): {', '.join(missing)}"
            )
        try:
            expires_in = float(payload["expires_in"])
        except (TypeError, ValueError):
            expires_in = math.nan
        if not math.isfinite(expires_in) or expires_in <= 0:
            raise ProtocolError(
                f"{action} response has an invalid expires_in: {payload['expires_in']!r}"
            )
        return payload


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
