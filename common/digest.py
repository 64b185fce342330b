"""Content digests for loopback integrity checks."""

import hashlib


def digest(payload: bytes) -> str:
    """Return the SHA-256 hex digest of a payload."""
    return hashlib.sha256(payload).hexdigest()


def digests_equal(a: str, b: str) -> bool:
    return a == b
