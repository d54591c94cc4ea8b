"""Opaque session token minting and peppered digests.

Raw tokens are handed to the client exactly once.  The store only ever
sees ``digest(raw, pepper)``, an HMAC-SHA256 keyed by a process-wide
secret that is never persisted next to the digests, so a copy of the
session table at rest cannot be replayed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

DEFAULT_TOKEN_BYTES = 32


def mint(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a URL-safe, unpadded token built from *byte_length* random bytes."""
    raw = secrets.token_bytes(byte_length)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def digest(raw_token: str, pepper: str) -> str:
    """Return the hex HMAC-SHA256 of *raw_token* keyed by *pepper*."""
    return hmac.new(
        pepper.encode("utf-8"),
        raw_token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class TokenCodec:
    """Binds :func:`mint` and :func:`digest` to the process pepper.

    Parameters
    ----------
    pepper:
        Secret key for the token digest.
    byte_length:
        Entropy of minted tokens in bytes.
    """

    def __init__(self, pepper: str, byte_length: int = DEFAULT_TOKEN_BYTES) -> None:
        if not pepper:
            raise ValueError("Session pepper must not be empty")
        if byte_length < 16:
            raise ValueError(f"Session tokens need at least 16 bytes of entropy, got {byte_length}")
        self._pepper = pepper
        self._byte_length = byte_length

    def mint(self) -> str:
        return mint(self._byte_length)

    def digest(self, raw_token: str) -> str:
        return digest(raw_token, self._pepper)
