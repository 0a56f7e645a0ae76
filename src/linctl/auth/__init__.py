"""OAuth 2.0 authorization code + PKCE sign-in for linctl.

linctl is a public client: it never holds a client secret.  The package
covers the whole credential lifecycle:

- :class:`AuthOrchestrator` -- login, logout, status and valid-token access.
- :class:`RefreshCoordinator` -- single-flight refresh with token rotation.
- :class:`CredentialStore` -- memory, environment, OS keyring, then a
  plain file, in that order of precedence.
- :class:`TokenClient` -- code exchange, refresh and revocation over HTTP.
- :class:`CallbackListener` / :class:`ManualCodeInput` -- how the
  authorization code gets back to the CLI.

Typical usage::

    from linctl.auth import AuthOrchestrator

    orchestrator = AuthOrchestrator(settings.oauth)
    token = await orchestrator.get_valid_access_token()
"""

from linctl.auth.callback import CallbackListener, CallbackResult, ManualCodeInput
from linctl.auth.credential_store import CredentialStore, create_default_store
from linctl.auth.orchestrator import AuthOrchestrator
from linctl.auth.refresh import RefreshCoordinator
from linctl.auth.token_client import TokenClient

__all__ = [
    "AuthOrchestrator",
    "CallbackListener",
    "CallbackResult",
    "CredentialStore",
    "ManualCodeInput",
    "RefreshCoordinator",
    "TokenClient",
    "create_default_store",
]
