from __future__ import annotations

import hashlib


def compute_bytes_digest(data: bytes, alg: str = "sha256") -> str:
    h = hashlib.new(alg)
    h.update(data)
    return h.hexdigest()


def fingerprint_key(key: str) -> str:
    """Return the content address (SHA-256 hex) used to name a key's stored file."""
    return compute_bytes_digest(key.encode("utf-8"), "sha256")
