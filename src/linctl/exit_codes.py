"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~linctl.exceptions.LinctlError` subclass.
Shell wrappers can inspect the exit code to tell "log in again" apart from
"the network is down" without parsing stderr.

Example::

    $ linctl auth token
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- no usable credentials, run `linctl auth login`
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""Invalid arguments or malformed local input (e.g. a callback without a code)."""

EXIT_AUTH_FAILURE = 3
"""Authentication failed or must be redone (provider error, CSRF mismatch, dead refresh token)."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, 5xx from the token endpoint)."""

EXIT_TIMEOUT = 8
"""The browser sign-in was not completed before the callback timeout."""

EXIT_STORAGE_ERROR = 9
"""A credential storage backend could not be read or written."""

EXIT_INTERRUPTED = 130
"""Interrupted with Ctrl-C (128 + SIGINT)."""
