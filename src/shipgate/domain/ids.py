"""Run and event identifiers: ``<prefix>-<ULID>`` strings that sort by creation time."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
EVENT_ID_PREFIX: Final[str] = "evt"

_SEPARATOR: Final[str] = "-"
_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")

    random_part = (randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES)
    if len(random_part) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(bytes(random_part), "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def parse_ulid_timestamp_ms(value: str) -> int:
    """Return the millisecond timestamp embedded in ``value``."""
    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        raise ValueError(f"ulid must be a {ULID_LENGTH}-character string")
    decoded = 0
    for index, char in enumerate(value):
        digit = _DECODE_TABLE.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
        decoded = (decoded << 5) | digit
    if decoded >> 128:
        raise ValueError("ulid overflow: value exceeds 128 bits")
    return decoded >> 80


def generate_prefixed_id(prefix: str, *, timestamp_ms: int | None = None) -> str:
    if not prefix or _SEPARATOR in prefix:
        raise ValueError(f"prefix must be non-empty and must not contain {_SEPARATOR!r}")
    return f"{prefix}{_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Raise ``ValueError`` unless ``id_str`` is ``<expected_prefix>-<ULID>``."""
    lead = f"{expected_prefix}{_SEPARATOR}"
    if not isinstance(id_str, str) or not id_str.startswith(lead):
        raise ValueError(f"expected an id starting with {lead!r}, got {id_str!r}")
    try:
        parse_ulid_timestamp_ms(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part in {id_str!r}: {exc}") from exc


def generate_run_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_run_id(id_str: str) -> None:
    validate_prefixed_id(id_str, RUN_ID_PREFIX)


def generate_event_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX, timestamp_ms=timestamp_ms)


def short_id(id_str: str) -> str:
    """Last 8 characters of an id, for compact display."""
    if len(id_str) < 8:
        raise ValueError("id must be at least 8 characters")
    return id_str[-8:]


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_ulid",
    "parse_ulid_timestamp_ms",
    "short_id",
    "validate_prefixed_id",
    "validate_run_id",
]
