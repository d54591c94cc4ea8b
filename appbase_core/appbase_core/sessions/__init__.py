"""Opaque session token primitives."""

from appbase_core.sessions.token_codec import TokenCodec, digest, mint

__all__ = ["TokenCodec", "digest", "mint"]
