"""PKCE (Proof Key for Code Exchange) parameter generation.

:rfc:`7636` binds an authorization code to the process that started the
flow, which is what lets a public client such as a CLI use the
Authorization Code grant without a client secret.  Only the ``S256``
challenge method is supported.

All randomness comes from :mod:`secrets`.  If the operating system's
entropy source fails, the underlying ``OSError`` propagates; nothing here
falls back to a weaker generator or a shorter value.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string
from typing import Optional

from linctl.models import PkceSession

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128

# RFC 7636 section 4.1: ALPHA / DIGIT / "-" / "." / "_" / "~"
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"

STATE_BYTES = 16


def generate_verifier(length: int = 64) -> str:
    """Generate a PKCE code verifier.

    Args:
        length: Number of characters, between 43 and 128 inclusive.

    Returns:
        A random string drawn from the unreserved URL alphabet.

    Raises:
        ValueError: If *length* is outside the range allowed by RFC 7636.
    """
    if not VERIFIER_MIN_LENGTH <= length <= VERIFIER_MAX_LENGTH:
        raise ValueError(
            f"PKCE verifier length must be between {VERIFIER_MIN_LENGTH} and "
            f"{VERIFIER_MAX_LENGTH}, got {length}"
        )
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def generate_challenge(verifier: str) -> str:
    """Derive the ``S256`` code challenge for *verifier*.

    Returns:
        ``base64url(sha256(verifier))`` with the ``=`` padding stripped.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """Generate a CSRF ``state`` value (16 random bytes, hex encoded)."""
    return secrets.token_hex(STATE_BYTES)


def create_session(
    port: int, verifier: Optional[str] = None, state: Optional[str] = None
) -> PkceSession:
    """Build a :class:`~linctl.models.PkceSession` for one authorization attempt.

    Args:
        port: The loopback port the callback listener is bound to.
        verifier: Pre-generated verifier; a fresh one is generated if omitted.
        state: Pre-generated state; a fresh one is generated if omitted.
    """
    verifier = verifier or generate_verifier()
    return PkceSession(
        verifier=verifier,
        challenge=generate_challenge(verifier),
        state=state or generate_state(),
        port=port,
    )
