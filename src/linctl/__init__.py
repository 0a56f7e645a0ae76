"""linctl -- command-line client for the Linear API.

This package holds the authentication core of the ``linctl`` CLI: an
OAuth 2.0 Authorization Code flow with PKCE for a public client, a
single-flight refresh guard for rotating refresh tokens, and a layered
credential store that persists tokens across invocations.

Typical workflow::

    linctl auth login     # browser sign-in, tokens stored
    linctl auth status    # inspect the stored credential
    linctl auth token     # print a valid access token for scripts

Modules:
    app: Typer application factory and CLI entry point.
    auth: PKCE, token exchange, callback capture, refresh, orchestration.
    models: Pydantic models shared across the package.
    config: XDG-aware settings file and environment precedence.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.3.0"
