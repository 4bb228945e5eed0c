"""
Sortable identifiers for integration invocations and their events.

An identifier is a ULID (48-bit millisecond timestamp followed by 80 random
bits, Crockford Base32) behind a short kind prefix, e.g. ``inv-01J9...``.
Identifiers created later sort after earlier ones, so log files and replayed
events keep their order when sorted by id.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10

INVOCATION_ID_PREFIX: Final[str] = "inv"
EVENT_ID_PREFIX: Final[str] = "evt"

_TIMESTAMP_BITS: Final[int] = 48
_RANDOM_BITS: Final[int] = ULID_RANDOM_BYTES * 8
_ULID_BITS: Final[int] = _TIMESTAMP_BITS + _RANDOM_BITS
_SEPARATOR: Final[str] = "-"

# int(..., 32) understands 0-9a-v; map Crockford digits onto that alphabet.
_TO_BASE32HEX: Final[dict[int, int]] = str.maketrans(
    CROCKFORD_BASE32_ALPHABET, "0123456789abcdefghijklmnopqrstuv"
)

RandomSource = Callable[[int], bytes]

__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "INVOCATION_ID_PREFIX",
    "ULID_LENGTH",
    "generate_event_id",
    "generate_invocation_id",
    "generate_prefixed_id",
    "generate_ulid",
    "validate_event_id",
    "validate_invocation_id",
    "validate_prefixed_id",
    "validate_ulid",
]


def generate_ulid(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """Return a new uppercase ULID.

    ``timestamp_ms`` and ``randbytes`` exist so tests can pin the output.
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    if not isinstance(timestamp_ms, int) or not 0 <= timestamp_ms < (1 << _TIMESTAMP_BITS):
        raise ValueError(f"timestamp_ms out of range: {timestamp_ms!r}")

    entropy = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(entropy) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (timestamp_ms << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    digits = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(CROCKFORD_BASE32_ALPHABET[digit])
    return "".join(reversed(digits))


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed ULID (any case)."""
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    upper = value.upper()
    for index, char in enumerate(upper):
        if char not in CROCKFORD_BASE32_ALPHABET:
            raise ValueError(f"invalid ULID character {value[index]!r} at index {index}")
    if int(upper.translate(_TO_BASE32HEX), 32) >> _ULID_BITS:
        raise ValueError("ulid overflow: value exceeds 128 bits")


def generate_prefixed_id(
    prefix: str, *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    _check_prefix(prefix)
    return prefix + _SEPARATOR + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_prefixed_id(value: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    lead = expected_prefix + _SEPARATOR
    if not isinstance(value, str) or not value.startswith(lead):
        raise ValueError(f"expected prefix '{lead}' in {value!r}")
    try:
        validate_ulid(value[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_invocation_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return generate_prefixed_id(INVOCATION_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_invocation_id(value: str) -> None:
    validate_prefixed_id(value, INVOCATION_ID_PREFIX)


def generate_event_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_event_id(value: str) -> None:
    validate_prefixed_id(value, EVENT_ID_PREFIX)


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")
