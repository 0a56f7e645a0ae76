"""Tests for PKCE parameter generation."""

from __future__ import annotations

import base64
import hashlib
import re

import pytest

from linctl.auth.pkce import (
    VERIFIER_ALPHABET,
    create_session,
    generate_challenge,
    generate_state,
    generate_verifier,
)


class TestGenerateVerifier:
    def test_default_length(self) -> None:
        assert len(generate_verifier()) == 64

    @pytest.mark.parametrize("length", [43, 128])
    def test_boundary_lengths(self, length: int) -> None:
        assert len(generate_verifier(length)) == length

    @pytest.mark.parametrize("length", [0, 42, 129])
    def test_rejects_out_of_range(self, length: int) -> None:
        with pytest.raises(ValueError, match="between 43 and 128"):
            generate_verifier(length)

    def test_uses_unreserved_alphabet(self) -> None:
        verifier = generate_verifier(128)
        assert set(verifier) <= set(VERIFIER_ALPHABET)

    def test_values_differ(self) -> None:
        assert generate_verifier() != generate_verifier()


class TestGenerateChallenge:
    def test_rfc7636_appendix_b(self) -> None:
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_deterministic(self) -> None:
        verifier = generate_verifier()
        assert generate_challenge(verifier) == generate_challenge(verifier)

    def test_unpadded_base64url_of_sha256(self) -> None:
        verifier = generate_verifier()
        challenge = generate_challenge(verifier)
        assert "=" not in challenge
        padded = challenge + "=" * (-len(challenge) % 4)
        assert base64.urlsafe_b64decode(padded) == hashlib.sha256(verifier.encode()).digest()


class TestGenerateState:
    def test_is_32_hex_chars(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{32}", generate_state())

    def test_values_differ(self) -> None:
        assert generate_state() != generate_state()


class TestCreateSession:
    def test_generates_matching_pair(self) -> None:
        session = create_session(34711)
        assert session.port == 34711
        assert session.challenge == generate_challenge(session.verifier)
        assert len(session.state) == 32

    def test_uses_supplied_values(self) -> None:
        verifier = "v" * 43
        session = create_session(1, verifier=verifier, state="S")
        assert session.verifier == verifier
        assert session.state == "S"
