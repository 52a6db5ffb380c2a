"""Token and digest primitives.

Pure functions with no domain knowledge.
"""

from __future__ import annotations

import hashlib
import hmac
import os


def generate_token() -> str:
    """Return a single-use, unguessable token (256 random bits, hex)."""
    return os.urandom(32).hex()


def tokens_match(expected: str, given: str) -> bool:
    """Compare two tokens in constant time."""
    return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


def sha256_hash(data: bytes) -> str:
    """Compute SHA-256 hash. Returns hex-encoded digest."""
    return hashlib.sha256(data).hexdigest()


def fingerprint(*parts: object) -> str:
    """Stable digest of an ordered tuple of values.

    ``None`` and the empty string hash differently so optional fields
    cannot collide.
    """
    h = hashlib.sha256()
    for part in parts:
        token = "\x00" if part is None else repr(part)
        h.update(token.encode("utf-8"))
        h.update(b"\x1f")
    return h.hexdigest()
