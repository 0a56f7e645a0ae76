"""Capture the authorization code from the provider's redirect.

Two ways in, raced against each other by the orchestrator:

* :class:`CallbackListener` -- an ephemeral HTTP server on a loopback port
  that receives the browser redirect.  It tries each pre-registered port in
  order, since providers match redirect URIs exactly.
* :class:`ManualCodeInput` -- for headless machines: the user pastes either
  the full redirect URL or just the code.

Both validate with the same rules (:func:`validate_callback_params`):
``error`` first, then a present ``code``, then an exact ``state`` match.

The HTTP server is stdlib :mod:`http.server` running on a daemon thread;
results are handed to the event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import errno
import hmac
import html
import logging
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Mapping, Optional, Sequence, TextIO, Union
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, ConfigDict

from linctl.exceptions import (
    CallbackBindError,
    LinctlError,
    LoginCancelled,
    ProtocolError,
    TimeoutError_,
    ValidationError,
)

logger = logging.getLogger(__name__)

_RETRYABLE_BIND_ERRNOS = (errno.EADDRINUSE, errno.EACCES)

_SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head><title>linctl: signed in</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f4f5f8; color: #1f2023; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  p { color: #6b6f76; }
</style></head>
<body><div class="card">
  <h1>Signed in to Linear</h1>
  <p>You can close this tab and return to the terminal.</p>
</div></body></html>"""

_ERROR_HTML = """<!DOCTYPE html>
<html>
<head><title>linctl: sign-in failed</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f4f5f8; color: #1f2023; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: #c62828; }}
  p {{ color: #6b6f76; }}
</style></head>
<body><div class="card">
  <h1>Sign-in failed</h1>
  <p>{error}</p>
  <p>Return to the terminal and run <code>linctl auth login</code> again.</p>
</div></body></html>"""


class CallbackResult(BaseModel):
    """A validated redirect: the one-time code and the echoed state."""

    model_config = ConfigDict(frozen=True)

    code: str
    state: str


_Outcome = Union[CallbackResult, LinctlError]


def validate_callback_params(
    params: Mapping[str, Optional[str]], expected_state: str
) -> CallbackResult:
    """Validate redirect query parameters.

    Args:
        params: Single-valued query parameters from the redirect.
        expected_state: The ``state`` sent in the authorization request.

    Returns:
        The code and state.

    Raises:
        ProtocolError: If the provider sent ``error``, or ``state`` is
            missing or does not match exactly.
        ValidationError: If ``code`` is missing.
    """
    error = params.get("error")
    if error:
        description = params.get("error_description") or ""
        detail = f"{error}: {description}" if description else error
        raise ProtocolError(
            f"Authorization was not granted ({detail})",
            error=error,
            error_description=description or None,
        )

    code = params.get("code")
    if not code:
        raise ValidationError("The redirect did not include an authorization code")

    state = params.get("state")
    if not state or not hmac.compare_digest(state, expected_state):
        raise ProtocolError(
            "State mismatch in the redirect; the request may have been forged. "
            "Start the sign-in again."
        )
    return CallbackResult(code=code, state=state)


def _first_values(query: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(query).items() if values}


# ------------------------------------------------------------------ #
# Loopback listener
# ------------------------------------------------------------------ #


class CallbackListener:
    """One-shot loopback HTTP server for the OAuth redirect.

    Args:
        expected_state: The session's CSRF ``state``.
        ports: Registered redirect ports, tried in order by :meth:`bind`.
        host: Address to bind.  Always a loopback address.
        path: Callback path; requests for anything else get a 404.
        close_grace: Seconds to keep serving after the redirect was handled
            so the browser receives the page.

    Example::

        listener = CallbackListener(session_state, [34711, 34712])
        port = listener.bind()
        try:
            result = await listener.wait(timeout=300)
        finally:
            await listener.aclose()
    """

    def __init__(
        self,
        expected_state: str,
        ports: Sequence[int],
        host: str = "127.0.0.1",
        path: str = "/callback",
        close_grace: float = 0.1,
    ) -> None:
        if not ports:
            raise ValueError("At least one callback port is required")
        self._expected_state = expected_state
        self._ports = list(ports)
        self._host = host
        self._path = path
        self._close_grace = close_grace

        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._outcome: Optional[_Outcome] = None
        self._future: Optional[asyncio.Future[_Outcome]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def port(self) -> Optional[int]:
        """The bound port, or ``None`` before :meth:`bind`."""
        return self._server.server_address[1] if self._server is not None else None

    def bind(self) -> int:
        """Bind the first free registered port and start serving.

        Ports refused with "address in use" or "permission denied" are
        skipped.

        Returns:
            The bound port.

        Raises:
            CallbackBindError: If no port could be bound.
        """
        if self._server is not None:
            return self._server.server_address[1]

        handler = self._make_handler()
        failures: list[str] = []
        for port in self._ports:
            try:
                server = HTTPServer((self._host, port), handler)
            except OSError as exc:
                failures.append(f"{port} ({exc.strerror or exc})")
                if exc.errno in _RETRYABLE_BIND_ERRNOS:
                    logger.debug("Callback port %d unavailable: %s", port, exc)
                    continue
                raise CallbackBindError(
                    f"Could not start the callback listener on port {port}: {exc}"
                ) from exc
            self._server = server
            break
        else:
            raise CallbackBindError(
                "None of the registered callback ports are free: " + ", ".join(failures)
            )

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.05},
            name="linctl-oauth-callback",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Callback listener on %s:%d%s", self._host, self.port, self._path)
        return self._server.server_address[1]

    async def wait(self, timeout: Optional[float] = 300.0) -> CallbackResult:
        """Wait for the redirect and return its validated result.

        The listener is closed when this returns, raises, or is cancelled.

        Args:
            timeout: Seconds to wait.  ``None`` waits indefinitely.

        Raises:
            ProtocolError: Provider error or state mismatch.
            ValidationError: Redirect without a code.
            TimeoutError_: Nothing arrived within *timeout*.
            RuntimeError: If :meth:`bind` was not called.
        """
        if self._server is None:
            raise RuntimeError("CallbackListener.bind() must be called before wait()")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[_Outcome] = loop.create_future()
        with self._lock:
            self._loop = loop
            self._future = future
            if self._outcome is not None:
                future.set_result(self._outcome)

        try:
            try:
                outcome = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                raise TimeoutError_(
                    f"No authorization callback received within {timeout:.0f} seconds"
                ) from None
            await asyncio.sleep(self._close_grace)
        finally:
            await self.aclose()

        if isinstance(outcome, LinctlError):
            raise outcome
        return outcome

    async def aclose(self) -> None:
        """:meth:`close` on a worker thread, keeping the event loop free."""
        if self._server is not None:
            await asyncio.get_running_loop().run_in_executor(None, self.close)

    def close(self) -> None:
        """Stop serving and release the port.  Safe to call repeatedly."""
        server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.debug("Callback listener closed")

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _deliver(self, outcome: _Outcome) -> bool:
        """Record the first outcome and wake :meth:`wait`.  Runs on the server thread."""
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
            loop, future = self._loop, self._future
        if loop is not None and future is not None:
            loop.call_soon_threadsafe(_resolve, future, outcome)
        return True

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        listener = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != listener._path:
                    self.send_error(404)
                    return

                outcome: _Outcome
                try:
                    outcome = validate_callback_params(
                        _first_values(parsed.query), listener._expected_state
                    )
                except (ProtocolError, ValidationError) as exc:
                    outcome = exc

                # Only the first redirect counts; a reload shows the page for that one.
                listener._deliver(outcome)
                first = listener._outcome
                if isinstance(first, CallbackResult):
                    self._send_html(200, _SUCCESS_HTML)
                else:
                    safe = html.escape(str(first), quote=True)
                    self._send_html(400, _ERROR_HTML.format(error=safe))

            def _send_html(self, status: int, content: str) -> None:
                encoded = content.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, format: str, *args: Any) -> None:
                # Request lines carry the authorization code.
                logger.debug("Callback listener handled a %s request", self.command)

        return _CallbackHandler


def _resolve(future: asyncio.Future[Any], value: Any) -> None:
    if not future.done():
        future.set_result(value)


# ------------------------------------------------------------------ #
# Manual paste
# ------------------------------------------------------------------ #


def parse_manual_input(text: str, expected_state: str) -> CallbackResult:
    """Interpret what the user pasted at the manual prompt.

    * empty input or ``cancel`` -- the user gave up
    * a redirect URL (or a bare ``?code=...&state=...`` query) -- validated
      exactly like the listener does
    * anything else -- taken as a bare code.  There is no state to compare,
      so it is accepted as matching and a warning is logged.

    Raises:
        LoginCancelled: Empty input or ``cancel``.
        ProtocolError: URL with ``error`` or a wrong ``state``.
        ValidationError: URL without a code.
    """
    value = text.strip()
    if not value or value.lower() == "cancel":
        raise LoginCancelled("Sign-in cancelled")

    if "://" in value or value.startswith("?") or "code=" in value:
        query = urlparse(value).query if "://" in value else value.lstrip("?")
        return validate_callback_params(_first_values(query), expected_state)

    logger.warning(
        "Pasted a bare authorization code; the state parameter cannot be checked"
    )
    return CallbackResult(code=value, state=expected_state)


class ManualCodeInput:
    """Read one pasted redirect URL or code from a stream.

    The blocking read happens on a daemon thread, so an abandoned prompt
    (the browser redirect won the race) never keeps the process alive.

    Args:
        expected_state: The session's CSRF ``state``.
        prompt: Text written to stderr before reading.
        stream: Input stream.  Defaults to :data:`sys.stdin`.
    """

    def __init__(
        self,
        expected_state: str,
        prompt: Optional[str] = None,
        stream: Optional[TextIO] = None,
    ) -> None:
        self._expected_state = expected_state
        self._prompt = prompt
        self._stream = stream

    async def read(self) -> CallbackResult:
        """Wait for a line of input and validate it.

        Raises:
            LoginCancelled: Empty input, ``cancel``, or end of input.
            ProtocolError: Pasted URL with ``error`` or a wrong ``state``.
            ValidationError: Pasted URL without a code.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def _reader() -> None:
            stream = self._stream or sys.stdin
            try:
                if self._prompt:
                    sys.stderr.write(self._prompt)
                    sys.stderr.flush()
                line = stream.readline()
            except (OSError, ValueError) as exc:
                _post(loop, future, exc)
                return
            _post(loop, future, line)

        threading.Thread(target=_reader, name="linctl-manual-code", daemon=True).start()
        line = await future
        return parse_manual_input(line, self._expected_state)


def _post(loop: asyncio.AbstractEventLoop, future: asyncio.Future[Any], value: Any) -> None:
    def _settle() -> None:
        if future.done():
            return
        if isinstance(value, BaseException):
            future.set_exception(LoginCancelled(f"Could not read input: {value}"))
        else:
            future.set_result(value)

    try:
        loop.call_soon_threadsafe(_settle)
    except RuntimeError:
        # Event loop already closed: the prompt lost the race.
        logger.debug("Discarding manual input received after sign-in finished")
