"""Auth commands -- sign in to Linear and manage the stored OAuth token.

Provides the ``linctl auth`` sub-command group.  Every command builds one
:class:`~linctl.auth.orchestrator.AuthOrchestrator` from the resolved
settings, runs it inside a single :func:`asyncio.run`, and maps
:class:`~linctl.exceptions.LinctlError` to the error's exit code.

Typical workflow::

    linctl auth login            # browser sign-in
    linctl auth status           # who am I, when does it expire
    linctl auth token            # print a valid access token for scripts
    linctl auth logout
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from linctl.auth.orchestrator import AuthOrchestrator
from linctl.config import resolve_settings
from linctl.exceptions import (
    CallbackBindError,
    ConfigError,
    LinctlError,
    ReauthenticationRequired,
    TimeoutError_,
)
from linctl.exit_codes import EXIT_AUTH_FAILURE
from linctl.models import Settings
from linctl.output import error, format_response, info, print_data, success, suggest, url, warning

T = TypeVar("T")

auth_app = typer.Typer(no_args_is_help=True)


def _make_orchestrator(settings: Settings) -> AuthOrchestrator:
    """Build the orchestrator for one command invocation."""
    return AuthOrchestrator(settings.oauth)


def _run(
    action: Callable[[AuthOrchestrator], Awaitable[T]],
    port: Optional[int] = None,
) -> T:
    """Run *action* against a fresh orchestrator on a new event loop.

    Raises:
        typer.Exit: With the error's exit code on any
            :class:`~linctl.exceptions.LinctlError`.
    """

    async def _main() -> T:
        settings = resolve_settings(cli_port=port)
        orchestrator = _make_orchestrator(settings)
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.aclose()

    try:
        return asyncio.run(_main())
    except LinctlError as exc:
        error(str(exc))
        _suggest_next_step(exc)
        raise typer.Exit(code=exc.exit_code) from None


def _suggest_next_step(exc: LinctlError) -> None:
    if isinstance(exc, ReauthenticationRequired):
        suggest("Sign in again: linctl auth login")
    elif isinstance(exc, ConfigError):
        suggest("Set the client id: linctl config set oauth.client_id <id>")
    elif isinstance(exc, CallbackBindError):
        suggest("Free one of the callback ports, or sign in with: linctl auth login --no-browser")
    elif isinstance(exc, TimeoutError_):
        suggest("Retry, or paste the redirect URL: linctl auth login --no-browser")


def _login_options(ctx: typer.Context, no_browser: bool, timeout: Optional[float]) -> dict[str, Any]:
    """Keyword arguments for :meth:`AuthOrchestrator.login` from CLI flags."""
    no_input = ctx.obj.get("no_input", False) if ctx.obj else False
    manual = None if no_input or not sys.stdin.isatty() else sys.stdin

    def _show_url(link: str) -> None:
        info("Open this URL in your browser to sign in:")
        url(link)
        if manual is not None:
            info("Or paste the redirect URL (or just the code) here and press Enter.")
            info("Type 'cancel' to abort.")

    return {
        "open_browser": not no_browser,
        "manual_input": manual,
        "on_authorization_url": _show_url,
        "timeout": timeout,
    }


@auth_app.command("login")
def auth_login(
    ctx: typer.Context,
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL instead of opening a browser."
    ),
    port: Optional[int] = typer.Option(
        None, "--port", help="Primary callback port (must be registered with the OAuth app)."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the browser redirect."
    ),
) -> None:
    """Sign in to Linear with OAuth (authorization code + PKCE).

    Opens the Linear consent page, waits for the redirect on a local port,
    and stores the tokens in the OS keyring (or an owner-only file when no
    keyring is available).  On a machine without a browser, use
    ``--no-browser`` and paste the redirect URL back into the terminal.

    Example::

        linctl auth login
        linctl auth login --no-browser --timeout 600
    """
    options = _login_options(ctx, no_browser, timeout)
    _run(lambda orchestrator: orchestrator.login(**options), port=port)
    success("Signed in to Linear.")
    suggest("Check it: linctl auth status")


@auth_app.command("logout")
def auth_logout(
    no_revoke: bool = typer.Option(
        False, "--no-revoke", help="Only forget local tokens; do not revoke them at Linear."
    ),
) -> None:
    """Sign out and remove stored credentials.

    Revokes the refresh token at Linear (best-effort) and clears the
    keyring entry and credentials file.  Tokens supplied through
    ``LINEAR_ACCESS_TOKEN`` / ``LINEAR_REFRESH_TOKEN`` cannot be removed
    from here; a warning says so.
    """
    cleared = _run(lambda orchestrator: orchestrator.logout(revoke=not no_revoke))
    if cleared:
        success("Signed out.")
    else:
        warning(
            "Stored credentials removed, but LINEAR_ACCESS_TOKEN and "
            "LINEAR_REFRESH_TOKEN are still set in the environment."
        )


@auth_app.command("status")
def auth_status() -> None:
    """Show whether you are signed in and when the token expires.

    Reads stored credentials only; no network request is made.

    Raises:
        typer.Exit: With code 3 when no credentials are stored.

    Example::

        linctl auth status
        linctl --json auth status
    """
    status = _run(lambda orchestrator: orchestrator.status())
    if status is None:
        error("Not signed in.")
        suggest("Sign in: linctl auth login")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
    format_response(status.model_dump(mode="json"))
    if not status.authenticated:
        info("The access token has expired; it will be refreshed on next use.")


@auth_app.command("token")
def auth_token() -> None:
    """Print a valid access token to stdout, refreshing it if needed.

    Example::

        curl -H "Authorization: Bearer $(linctl auth token)" https://api.linear.app/graphql
    """
    token = _run(lambda orchestrator: orchestrator.get_valid_access_token())
    if token is None:
        error("Not signed in.")
        suggest("Sign in: linctl auth login")
        raise typer.Exit(code=EXIT_AUTH_FAILURE)
    print_data(token)


@auth_app.command("reauth")
def auth_reauth(
    ctx: typer.Context,
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL instead of opening a browser."
    ),
    port: Optional[int] = typer.Option(None, "--port", help="Primary callback port."),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the browser redirect."
    ),
) -> None:
    """Sign out, then sign in again (e.g. to grant new scopes)."""
    options = _login_options(ctx, no_browser, timeout)
    _run(lambda orchestrator: orchestrator.re_authenticate(**options), port=port)
    success("Signed in to Linear.")
