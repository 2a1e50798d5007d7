"""
Canonical serialization and hashing shared by every component that commits
to data by hash (vote receipts, the public record, audit blocks).
"""

import json

from Crypto.Hash import SHA256


def canonical_json(data) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data) -> str:
    """SHA-256 hex digest of a string, bytes, or any JSON-serializable value."""
    if isinstance(data, bytes):
        raw = data
    elif isinstance(data, str):
        raw = data.encode("utf-8")
    else:
        raw = canonical_json(data).encode("utf-8")
    return SHA256.new(raw).hexdigest()
