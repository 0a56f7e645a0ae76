"""Exception hierarchy for linctl.

All exceptions inherit from :class:`LinctlError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`linctl.exit_codes`.
The top-level error handler in :func:`linctl.app.main` catches
``LinctlError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    LinctlError (exit 1)
    +-- ConfigError                  (exit 1)
    +-- ValidationError              (exit 2)
    +-- AuthError                    (exit 3)
    |   +-- ProtocolError            (exit 3)
    |   +-- InvalidGrantError        (exit 3)
    |   +-- ReauthenticationRequired (exit 3)
    |   +-- LoginCancelled           (exit 3)
    +-- NetworkError                 (exit 6)
    |   +-- CallbackBindError        (exit 6)
    +-- TimeoutError_                (exit 8)
    +-- StorageError                 (exit 9)

Retry semantics: only :class:`NetworkError` is worth retrying with the
caller's usual backoff.  :class:`InvalidGrantError` means the stored refresh
token is permanently dead and must never be retried.
"""

from __future__ import annotations

from typing import Optional

from linctl.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_STORAGE_ERROR,
    EXIT_TIMEOUT,
)


class LinctlError(Exception):
    """Base exception for all linctl errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`linctl.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(LinctlError):
    """Raised for configuration problems (missing client id, invalid settings JSON)."""

    exit_code = EXIT_GENERIC_FAILURE


class ValidationError(LinctlError):
    """Raised for malformed local input, e.g. a callback without an authorization code."""

    exit_code = EXIT_INVALID_USAGE


class AuthError(LinctlError):
    """Raised when authentication fails or has to be redone."""

    exit_code = EXIT_AUTH_FAILURE


class ProtocolError(AuthError):
    """Raised for OAuth protocol failures.

    Covers an ``error`` parameter on the redirect, a state mismatch (CSRF),
    and malformed token endpoint responses.  Not retryable.

    Args:
        message: Human-readable description.
        error: The provider's ``error`` code when one was supplied.
        error_description: The provider's ``error_description`` text.
    """

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ):
        super().__init__(message)
        self.error = error
        self.error_description = error_description


class InvalidGrantError(AuthError):
    """Raised when the token endpoint answers a refresh with ``invalid_grant``.

    The refresh token was already rotated away or revoked.  It can never
    succeed again, so the caller must purge stored credentials.
    """


class ReauthenticationRequired(AuthError):
    """Raised to every refresh waiter after stored credentials were purged.

    The user has to run ``linctl auth login`` again.
    """


class LoginCancelled(AuthError):
    """Raised when the user aborts the sign-in (e.g. types ``cancel`` at the prompt)."""


class NetworkError(LinctlError):
    """Raised on transport failures and non-2xx token endpoint responses.

    Retryable by the caller's normal policy; never retried internally.

    Args:
        message: Human-readable description.
        status_code: HTTP status when a response was received.
        body: Raw response body when a response was received.
    """

    exit_code = EXIT_CONNECTION_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CallbackBindError(NetworkError):
    """Raised when none of the registered callback ports could be bound."""


class TimeoutError_(LinctlError):
    """Raised when no redirect reaches the callback listener in time.

    Named with a trailing underscore to avoid shadowing the built-in
    ``TimeoutError``.
    """

    exit_code = EXIT_TIMEOUT


class StorageError(LinctlError):
    """Raised by a single credential backend when it cannot be read or written.

    The :class:`~linctl.auth.credential_store.CredentialStore` catches this
    and degrades to the next backend; it never reaches CLI users.
    """

    exit_code = EXIT_STORAGE_ERROR
