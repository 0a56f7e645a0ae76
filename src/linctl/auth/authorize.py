"""Authorization URL construction.

Pure string building with no I/O, so the URL the user is sent to can be
asserted on directly in tests.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence
from urllib.parse import urlencode

from linctl.models import OAuthConfig

logger = logging.getLogger(__name__)


def build_redirect_uri(config: OAuthConfig, port: int) -> str:
    """Return the redirect URI registered for *port*.

    Example::

        build_redirect_uri(OAuthConfig(), 34711)
        # 'http://localhost:34711/callback'
    """
    return f"http://{config.callback_host}:{port}{config.callback_path}"


def build_authorization_url(
    config: OAuthConfig,
    redirect_uri: str,
    challenge: str,
    state: str,
    scopes: Optional[Sequence[str]] = None,
) -> str:
    """Build the provider's authorize URL for a PKCE session.

    ``prompt=consent`` is always sent.  Without it the provider may silently
    reuse the workspace chosen during a previous sign-in, and re-running
    ``linctl auth login`` would never offer a different workspace.

    Args:
        config: OAuth client configuration (``authorize_url``, ``client_id``).
        redirect_uri: Where the provider should send the browser back.
        challenge: The session's ``S256`` code challenge.
        state: The session's CSRF state.
        scopes: Requested scopes in order; defaults to ``config.scopes``.

    Returns:
        The full authorize URL.  Scopes are space-joined and encoded as
        ``+`` (``read+issues%3Acreate``).

    Raises:
        ConfigError: If no ``client_id`` is configured.
    """
    requested = list(config.scopes if scopes is None else scopes)
    params = {
        "client_id": config.require_client_id(),
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(requested),
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": state,
        "prompt": "consent",
    }
    separator = "&" if "?" in config.authorize_url else "?"
    url = f"{config.authorize_url}{separator}{urlencode(params)}"
    logger.debug(
        "Built authorization URL (redirect_uri=%s, scopes=%s)",
        redirect_uri,
        params["scope"],
    )
    return url
