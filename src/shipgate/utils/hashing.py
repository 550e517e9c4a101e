"""
shipgate — hashing and canonical encoding helpers

Purpose
- Deterministic SHA-256 digests for artifact content and persisted records.
- One canonical JSON encoding (sorted keys, compact separators, UTF-8) so that
  equal values always hash equally.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping, Sequence

_SHA256_HEX_LENGTH = 64

__all__ = [
    "canonical_json",
    "canonical_json_bytes",
    "is_sha256_hex",
    "sha256_bytes",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return sha256_bytes(text.encode(encoding))


def canonical_json(value: object) -> str:
    """Serialize JSON-compatible ``value`` deterministically.

    Raises ``TypeError`` for values JSON cannot represent and ``ValueError`` for
    non-finite floats.
    """

    return json.dumps(
        _plain(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


def canonical_json_bytes(value: object) -> bytes:
    return canonical_json(value).encode("utf-8")


def is_sha256_hex(value: str) -> bool:
    if len(value) != _SHA256_HEX_LENGTH:
        return False
    return all(char in "0123456789abcdef" for char in value)


def _plain(value: object) -> object:
    """Copy ``value`` into dict/list form, rejecting what JSON cannot hold."""

    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("non-finite float is not valid JSON")
    if isinstance(value, Mapping):
        plain: dict[str, object] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"JSON object keys must be strings, got {type(key).__name__}")
            plain[key] = _plain(item)
        return plain
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_plain(item) for item in value]
    return value
