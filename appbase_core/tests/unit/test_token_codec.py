"""Tests for appbase_core/sessions/token_codec.py"""

from __future__ import annotations

import base64

import pytest
from appbase_core.sessions.token_codec import DEFAULT_TOKEN_BYTES, TokenCodec, digest, mint


class TestMint:
    """Verify raw token generation."""

    def test_default_length_is_url_safe_and_unpadded(self) -> None:
        token = mint()
        assert "=" not in token
        assert "+" not in token and "/" not in token
        padded = token + "=" * (-len(token) % 4)
        assert len(base64.urlsafe_b64decode(padded)) == DEFAULT_TOKEN_BYTES

    def test_tokens_are_unique(self) -> None:
        assert len({mint() for _ in range(200)}) == 200

    def test_custom_length(self) -> None:
        token = mint(16)
        padded = token + "=" * (-len(token) % 4)
        assert len(base64.urlsafe_b64decode(padded)) == 16


class TestDigest:
    """Verify peppered HMAC digests."""

    def test_deterministic(self) -> None:
        assert digest("tok", "pepper") == digest("tok", "pepper")

    def test_hex_sha256(self) -> None:
        value = digest("tok", "pepper")
        assert len(value) == 64
        int(value, 16)

    def test_pepper_changes_digest(self) -> None:
        assert digest("tok", "pepper-a") != digest("tok", "pepper-b")

    def test_token_changes_digest(self) -> None:
        assert digest("tok-a", "pepper") != digest("tok-b", "pepper")

    def test_digest_does_not_contain_token(self) -> None:
        raw = mint()
        assert raw not in digest(raw, "pepper")


class TestTokenCodec:
    """Verify the pepper-bound codec."""

    def test_round_trip_matches_module_functions(self) -> None:
        codec = TokenCodec("pepper")
        raw = codec.mint()
        assert codec.digest(raw) == digest(raw, "pepper")

    def test_rejects_empty_pepper(self) -> None:
        with pytest.raises(ValueError):
            TokenCodec("")

    def test_rejects_short_tokens(self) -> None:
        with pytest.raises(ValueError):
            TokenCodec("pepper", byte_length=8)
