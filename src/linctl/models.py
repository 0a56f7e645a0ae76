"""Canonical Pydantic models shared across all linctl modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into two groups:

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`OAuthConfig` and :class:`Settings`.

**Credential models** -- produced and consumed by :mod:`linctl.auth`:
    :class:`TokenRecord`, :class:`PkceSession`, :class:`CredentialSource`,
    :class:`AuthState`, and :class:`AuthStatus`.

All models use Pydantic v2.  :class:`TokenRecord` and :class:`PkceSession`
are frozen: a credential is only ever replaced as a whole, never patched
field by field.
"""

from __future__ import annotations

import enum
import json
import time
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from linctl.exceptions import ConfigError


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# --- Credential models ---


class CredentialSource(str, enum.Enum):
    """Where a :class:`TokenRecord` was read from or written to.

    Declaration order is read precedence: the credential store probes
    ``MEMORY`` first and ``FALLBACK_FILE`` last.  ``ENVIRONMENT`` is the only
    read-only source; refreshed tokens are never written back to it.
    """

    MEMORY = "memory"
    ENVIRONMENT = "environment"
    SECRET_STORE = "secret_store"
    FALLBACK_FILE = "fallback_file"

    @property
    def writable(self) -> bool:
        """Whether the store may write to (and purge) this source."""
        return self is not CredentialSource.ENVIRONMENT


class TokenRecord(BaseModel):
    """One complete OAuth credential set.

    A record is *valid* when both tokens are non-empty and ``expires_at`` is
    positive.  Invalid records can still be constructed so that callers can
    detect and discard corrupt data; see :attr:`is_valid`.

    Attributes:
        access_token: Bearer token sent to the API.
        refresh_token: Single-use token exchanged for the next record.  The
            provider rotates it on every successful refresh.
        expires_at: Access token expiry in epoch milliseconds.
        scope: Granted scopes.
        token_type: Token type reported by the provider.

    Example::

        record = TokenRecord(
            access_token="at", refresh_token="rt", expires_at=now_ms() + 3_600_000
        )
        assert record.is_valid
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    expires_at: int
    scope: frozenset[str] = Field(default_factory=frozenset)
    token_type: str = "Bearer"

    @field_serializer("scope")
    def _serialize_scope(self, scope: frozenset[str]) -> list[str]:
        return sorted(scope)

    @property
    def is_valid(self) -> bool:
        """Structural validity: both tokens present and a positive expiry."""
        return bool(self.access_token) and bool(self.refresh_token) and self.expires_at > 0

    def expires_within(self, seconds: float, now: Optional[int] = None) -> bool:
        """Return ``True`` if the access token expires within *seconds* of *now*."""
        current = now_ms() if now is None else now
        return current >= self.expires_at - int(seconds * 1000)

    def to_blob(self) -> str:
        """Serialise to the opaque JSON blob stored by persistent backends."""
        return self.model_dump_json()

    @classmethod
    def from_blob(cls, blob: Union[str, bytes, dict[str, Any]]) -> Optional[TokenRecord]:
        """Parse a stored blob, returning ``None`` for anything corrupt.

        Unparsable JSON, schema violations and structurally invalid records
        all yield ``None``; callers treat that as "purge and move on".
        """
        try:
            data = json.loads(blob) if isinstance(blob, (str, bytes)) else blob
            record = cls.model_validate(data)
        except (ValueError, TypeError):
            return None
        return record if record.is_valid else None

    @classmethod
    def from_token_response(
        cls, data: dict[str, Any], issued_at: Optional[int] = None
    ) -> TokenRecord:
        """Build a record from a token endpoint JSON response.

        The caller is responsible for checking that ``access_token``,
        ``refresh_token`` and ``expires_in`` are present.

        Args:
            data: Parsed token endpoint response.
            issued_at: Epoch milliseconds to count ``expires_in`` from.
                Defaults to now.
        """
        start = now_ms() if issued_at is None else issued_at
        raw_scope = data.get("scope") or ""
        if isinstance(raw_scope, str):
            scope = frozenset(s for s in raw_scope.replace(",", " ").split() if s)
        else:
            scope = frozenset(str(s) for s in raw_scope)
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_at=start + int(float(data["expires_in"]) * 1000),
            scope=scope,
            token_type=str(data.get("token_type") or "Bearer"),
        )


class PkceSession(BaseModel):
    """State for one authorization attempt.  Never persisted.

    Attributes:
        verifier: RFC 7636 code verifier (43-128 unreserved characters).
        challenge: ``base64url(sha256(verifier))`` without padding.
        state: Hex CSRF token compared against the redirect's ``state``.
        port: Loopback port the callback listener is bound to.
        created_at: When the attempt started (UTC).
    """

    model_config = ConfigDict(frozen=True)

    verifier: str
    challenge: str
    state: str
    port: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuthState(str, enum.Enum):
    """Lifecycle of the active credential as seen by the orchestrator."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class AuthStatus(BaseModel):
    """Summary of the stored credential, as shown by ``linctl auth status``."""

    authenticated: bool
    expires_at: str = Field(description="Access token expiry, ISO-8601 UTC")
    expires_in: int = Field(description="Seconds until expiry, never negative")
    scopes: list[str] = Field(default_factory=list)
    source: CredentialSource


# --- Configuration models ---


class OAuthConfig(BaseModel):
    """OAuth client configuration for the provider.

    Defaults target Linear.  Every port in ``[port] + fallback_ports`` must be
    registered as a redirect URI with the provider; wildcard ports are not
    assumed to be supported.
    """

    client_id: Optional[str] = Field(
        default=None, description="Public OAuth client id (no secret is ever used)"
    )
    authorize_url: str = "https://linear.app/oauth/authorize"
    token_url: str = "https://api.linear.app/oauth/token"
    revoke_url: str = "https://api.linear.app/oauth/revoke"
    scopes: list[str] = Field(
        default_factory=lambda: ["read", "issues:create", "comments:create"]
    )
    callback_host: str = Field(
        default="localhost", description="Host name used in the redirect URI"
    )
    bind_host: str = Field(
        default="127.0.0.1", description="Loopback address the listener binds to"
    )
    callback_path: str = "/callback"
    port: int = Field(default=34711, description="Primary callback port")
    fallback_ports: list[int] = Field(
        default_factory=lambda: [34712, 34713],
        description="Pre-registered ports tried in order when the primary is busy",
    )
    callback_timeout: float = Field(
        default=300.0, description="Seconds to wait for the browser redirect"
    )
    request_timeout: float = Field(
        default=30.0, description="Timeout for token endpoint requests in seconds"
    )
    refresh_buffer: int = Field(
        default=60, description="Refresh this many seconds before expiry"
    )
    close_grace: float = Field(
        default=0.1, description="Seconds to keep the listener open after responding"
    )

    def require_client_id(self) -> str:
        """Return ``client_id`` or raise :class:`~linctl.exceptions.ConfigError`."""
        if not self.client_id:
            raise ConfigError(
                "No OAuth client id configured. Set LINCTL_CLIENT_ID or run "
                "`linctl config set oauth.client_id <id>`."
            )
        return self.client_id

    @property
    def callback_ports(self) -> list[int]:
        """Primary port followed by the fallbacks, without duplicates."""
        ports: list[int] = []
        for port in [self.port, *self.fallback_ports]:
            if port not in ports:
                ports.append(port)
        return ports


class Settings(BaseModel):
    """Top-level settings persisted in ``config.json``.

    Loaded by :func:`~linctl.config.load_settings` and saved by
    :func:`~linctl.config.save_settings`.
    """

    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    log_level: str = Field(
        default="WARNING", description="Root log level: DEBUG, INFO, WARNING, ERROR"
    )
