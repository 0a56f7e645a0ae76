"""Tests for the sign-in orchestrator."""

from __future__ import annotations

import asyncio
import socket
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from linctl.auth.credential_store import ENV_ACCESS_TOKEN, ENV_EXPIRES_AT, ENV_REFRESH_TOKEN
from linctl.auth.orchestrator import AuthOrchestrator
from linctl.auth.pkce import generate_challenge
from linctl.auth.token_client import TokenClient
from linctl.exceptions import (
    CallbackBindError,
    ConfigError,
    ProtocolError,
    ReauthenticationRequired,
    TimeoutError_,
)
from linctl.models import AuthState, CredentialSource, OAuthConfig


TOKEN_BODY = {
    "access_token": "at-login",
    "token_type": "Bearer",
    "expires_in": 3600,
    "scope": "read issues:create",
    "refresh_token": "rt-login",
}


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class FakeProvider:
    """Token and revoke endpoints behind an ``httpx.MockTransport``."""

    def __init__(self, token_response: Optional[httpx.Response] = None) -> None:
        self.token_response = token_response or httpx.Response(200, json=TOKEN_BODY)
        self.token_requests: list[dict[str, str]] = []
        self.revoke_requests: list[dict[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if request.url.path.endswith("/revoke"):
            self.revoke_requests.append(form)
            return httpx.Response(200)
        self.token_requests.append(form)
        return self.token_response

    def client(self, config: OAuthConfig) -> TokenClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return TokenClient(config, http_client=http)


def _redirecting_browser(
    tamper: Callable[[dict[str, str]], dict[str, str]] = lambda q: q,
) -> Callable[[str], bool]:
    """A browser that approves consent and follows the redirect."""

    def _open(url: str) -> bool:
        params = _query(url)
        redirect = tamper({"code": "auth-code", "state": params["state"]})
        target = params["redirect_uri"].replace("localhost", "127.0.0.1")
        httpx.get(target, params=redirect, trust_env=False)
        return True

    return _open


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_orchestrator(oauth_config: OAuthConfig, make_store, provider: FakeProvider):
    def _make(browser: Optional[Callable[[str], bool]] = None, **store_kwargs: Any) -> AuthOrchestrator:
        return AuthOrchestrator(
            oauth_config,
            store=make_store(**store_kwargs),
            token_client=provider.client(oauth_config),
            browser=browser or (lambda url: True),
        )

    return _make


class _PastedRedirect:
    """Stream that 'pastes' the redirect URL for the URL it was shown."""

    def __init__(self, code: str = "pasted-code") -> None:
        self.url: Optional[str] = None
        self.code = code

    def show(self, url: str) -> None:
        self.url = url

    def readline(self) -> str:
        state = _query(self.url or "")["state"]
        return f"http://localhost:34711/callback?code={self.code}&state={state}\n"


class TestLogin:
    def test_browser_redirect_signs_in(self, make_orchestrator, provider: FakeProvider) -> None:
        orchestrator = make_orchestrator(browser=_redirecting_browser())
        urls: list[str] = []

        async def run():
            record = await orchestrator.login(on_authorization_url=urls.append)
            return record, await orchestrator.store.get()

        record, stored = asyncio.run(run())
        assert record.access_token == "at-login"
        assert stored == record
        assert orchestrator.state is AuthState.AUTHENTICATED

        params = _query(urls[0])
        exchange = provider.token_requests[0]
        assert exchange["code"] == "auth-code"
        assert exchange["redirect_uri"] == params["redirect_uri"]
        assert generate_challenge(exchange["code_verifier"]) == params["code_challenge"]
        assert "client_secret" not in exchange
        assert params["prompt"] == "consent"

    def test_state_mismatch_rejected(self, make_orchestrator, provider: FakeProvider) -> None:
        browser = _redirecting_browser(lambda q: {**q, "state": "forged"})
        orchestrator = make_orchestrator(browser=browser)

        async def run():
            with pytest.raises(ProtocolError):
                await orchestrator.login()
            return await orchestrator.store.get()

        assert asyncio.run(run()) is None
        assert provider.token_requests == []
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_malformed_token_response_stores_nothing(
        self, oauth_config, make_store, fake_secret_store, credential_file
    ) -> None:
        body = {k: v for k, v in TOKEN_BODY.items() if k != "refresh_token"}
        provider = FakeProvider(httpx.Response(200, json=body))
        store = make_store()
        orchestrator = AuthOrchestrator(
            oauth_config,
            store=store,
            token_client=provider.client(oauth_config),
            browser=_redirecting_browser(),
        )

        async def run():
            with pytest.raises(ProtocolError):
                await orchestrator.login()
            return await store.get()

        assert asyncio.run(run()) is None
        assert fake_secret_store.writes == 0
        assert not credential_file.path.exists()
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_manual_paste_wins_race(self, make_orchestrator, provider: FakeProvider) -> None:
        orchestrator = make_orchestrator()
        pasted = _PastedRedirect()

        record = asyncio.run(
            orchestrator.login(
                open_browser=False, manual_input=pasted, on_authorization_url=pasted.show
            )
        )
        assert record.refresh_token == "rt-login"
        assert provider.token_requests[0]["code"] == "pasted-code"

    def test_bind_failure_falls_back_to_manual_input(
        self, oauth_config, make_store, provider: FakeProvider
    ) -> None:
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        config = oauth_config.model_copy(update={"port": blocker.getsockname()[1]})
        orchestrator = AuthOrchestrator(
            config, store=make_store(), token_client=provider.client(config)
        )
        pasted = _PastedRedirect()
        try:
            asyncio.run(
                orchestrator.login(
                    open_browser=False, manual_input=pasted, on_authorization_url=pasted.show
                )
            )
        finally:
            blocker.close()
        assert provider.token_requests[0]["redirect_uri"] == (
            f"http://localhost:{config.port}/callback"
        )
        assert orchestrator.state is AuthState.AUTHENTICATED

    def test_bind_failure_without_manual_input(self, oauth_config, make_store, provider) -> None:
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        config = oauth_config.model_copy(update={"port": blocker.getsockname()[1]})
        orchestrator = AuthOrchestrator(
            config, store=make_store(), token_client=provider.client(config)
        )
        try:
            with pytest.raises(CallbackBindError):
                asyncio.run(orchestrator.login(open_browser=False))
        finally:
            blocker.close()
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_timeout(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        with pytest.raises(TimeoutError_):
            asyncio.run(orchestrator.login(open_browser=False, timeout=0.1))
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_requires_client_id(self, make_store, provider) -> None:
        config = OAuthConfig(port=0, fallback_ports=[])
        orchestrator = AuthOrchestrator(
            config, store=make_store(), token_client=provider.client(config)
        )
        with pytest.raises(ConfigError):
            asyncio.run(orchestrator.login(open_browser=False))


class TestLogout:
    def test_revokes_and_clears(self, make_orchestrator, provider, make_record) -> None:
        orchestrator = make_orchestrator()

        async def run():
            await orchestrator.store.store(make_record())
            cleared = await orchestrator.logout()
            return cleared, await orchestrator.store.get()

        assert asyncio.run(run()) == (True, None)
        assert provider.revoke_requests == [
            {"token": "refresh-1", "client_id": "abc", "token_type_hint": "refresh_token"}
        ]
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_no_revoke(self, make_orchestrator, provider, make_record) -> None:
        orchestrator = make_orchestrator()

        async def run():
            await orchestrator.store.store(make_record())
            return await orchestrator.logout(revoke=False)

        assert asyncio.run(run()) is True
        assert provider.revoke_requests == []

    def test_environment_credentials_remain(self, make_orchestrator, provider, make_record) -> None:
        record = make_record()
        orchestrator = make_orchestrator(
            environ={
                ENV_ACCESS_TOKEN: record.access_token,
                ENV_REFRESH_TOKEN: record.refresh_token,
                ENV_EXPIRES_AT: str(record.expires_at),
            }
        )
        assert asyncio.run(orchestrator.logout()) is False
        assert provider.revoke_requests == []


class TestSteadyState:
    def test_status_when_signed_out(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        assert asyncio.run(orchestrator.status()) is None
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_status(self, make_orchestrator, make_record) -> None:
        orchestrator = make_orchestrator()

        async def run():
            await orchestrator.store.store(make_record(expires_in=600))
            return await orchestrator.status()

        status = asyncio.run(run())
        assert status.authenticated is True
        assert 590 <= status.expires_in <= 600
        assert status.scopes == ["issues:create", "read"]
        assert status.source is CredentialSource.MEMORY
        assert status.expires_at.endswith("+00:00")

    def test_status_expired(self, make_orchestrator, make_record) -> None:
        orchestrator = make_orchestrator()

        async def run():
            await orchestrator.store.store(make_record(expires_in=-10))
            return await orchestrator.status()

        status = asyncio.run(run())
        assert status.authenticated is False
        assert status.expires_in == 0
        assert orchestrator.state is AuthState.EXPIRED

    def test_invalid_grant_signs_out(self, oauth_config, make_store, make_record) -> None:
        provider = FakeProvider(httpx.Response(400, json={"error": "invalid_grant"}))
        store = make_store()
        orchestrator = AuthOrchestrator(
            oauth_config, store=store, token_client=provider.client(oauth_config)
        )

        async def run():
            await store.store(make_record(expires_in=0))
            with pytest.raises(ReauthenticationRequired):
                await orchestrator.get_valid_access_token()
            return await store.get()

        assert asyncio.run(run()) is None
        assert orchestrator.state is AuthState.UNAUTHENTICATED

    def test_valid_token(self, make_orchestrator, make_record) -> None:
        orchestrator = make_orchestrator()

        async def run():
            await orchestrator.store.store(make_record())
            return await orchestrator.get_valid_access_token()

        assert asyncio.run(run()) == "access-1"
        assert orchestrator.state is AuthState.AUTHENTICATED

    def test_re_authenticate(self, make_orchestrator, provider, make_record) -> None:
        orchestrator = make_orchestrator(browser=_redirecting_browser())

        async def run():
            await orchestrator.store.store(make_record())
            return await orchestrator.re_authenticate()

        record = asyncio.run(run())
        assert record.access_token == "at-login"
        assert len(provider.revoke_requests) == 1
