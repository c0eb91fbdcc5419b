"""Identifiers for Grove entities.

All entities use UUIDv7 (time-ordered UUIDs) as primary keys. Users refer to
them by short, git-style prefixes (8 hex characters by default), which are
resolved against the live candidate set at call time.
"""

import os
import threading
import time
from datetime import datetime, timezone
from typing import Iterable

from grove.errors import AmbiguousIdError, NotFoundError

FULL_ID_LENGTH = 36
MIN_SHORT_ID_LENGTH = 8

_RAND_A_BITS = 12
_RAND_B_BITS = 62

_lock = threading.Lock()
_last_fields: tuple[int, int, int] = (0, 0, 0)


def _compose(timestamp_ms: int, rand_a: int, rand_b: int) -> str:
    value = (
        (timestamp_ms << 80)
        | (0x7 << 76)
        | (rand_a << 64)
        | (0b10 << 62)
        | rand_b
    )
    h = f"{value:032x}"
    return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:]}"


def generate_id() -> str:
    """Generate a UUIDv7 string.

    Layout: 48-bit Unix millisecond timestamp, version nibble 7, 12 random
    bits, RFC 4122 variant bits, 62 random bits. IDs generated by one process
    sort in generation order even within the same millisecond: when the clock
    has not advanced the previous value is incremented instead.
    """
    global _last_fields

    timestamp_ms = time.time_ns() // 1_000_000
    random_bits = int.from_bytes(os.urandom(10), "big")
    rand_a = random_bits >> (80 - _RAND_A_BITS)
    rand_b = random_bits & ((1 << _RAND_B_BITS) - 1)

    with _lock:
        last_ts, last_a, last_b = _last_fields
        if (timestamp_ms, rand_a, rand_b) <= _last_fields:
            timestamp_ms, rand_a, rand_b = last_ts, last_a, last_b + 1
            if rand_b >> _RAND_B_BITS:
                rand_b = 0
                rand_a += 1
                if rand_a >> _RAND_A_BITS:
                    rand_a = 0
                    timestamp_ms += 1
        _last_fields = (timestamp_ms, rand_a, rand_b)

    return _compose(timestamp_ms, rand_a, rand_b)


def normalize_id(value: str) -> str:
    """Strip hyphens and lowercase, the form prefixes are compared in."""
    return value.replace("-", "").lower()


def is_full_id(value: str) -> bool:
    return len(value) == FULL_ID_LENGTH and "-" in value


def format_short_id(uuid: str, length: int = MIN_SHORT_ID_LENGTH) -> str:
    """Format a UUID as a short ID for display. Not reversible."""
    return normalize_id(uuid)[:length]


def id_timestamp(uuid: str) -> datetime:
    """Return the creation time embedded in a UUIDv7."""
    timestamp_ms = int(normalize_id(uuid)[:12], 16)
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def like_pattern(prefix: str) -> str:
    """Turn a short-ID prefix into a SQL LIKE pattern over hyphenated IDs.

    >>> like_pattern("01933E4A7B")
    '01933e4a-7b%'
    """
    normalized = normalize_id(prefix)
    if not normalized:
        raise NotFoundError(entity_type, prefix)
    parts = []
    for start, end in ((0, 8), (8, 12), (12, 16), (16, 20), (20, 32)):
        chunk = normalized[start:end]
        if not chunk:
            break
        parts.append(chunk)
    return "-".join(parts) + "%"


def resolve_short_id(prefix: str, candidates: Iterable[str], entity_type: str = "Entity") -> str:
    """Resolve a short ID prefix to exactly one full ID.

    A full hyphenated ID is returned unchanged without scanning, since callers
    pass full IDs and prefixes interchangeably.

    Raises:
        NotFoundError: The prefix is empty or no candidate starts with it.
        AmbiguousIdError: More than one candidate starts with the prefix.
    """
    if is_full_id(prefix):
        return prefix

    normalized = normalize_id(prefix)
    if not normalized:
        raise NotFoundError(entity_type, prefix)
    matches = [c for c in candidates if normalize_id(c).startswith(normalized)]

    if not matches:
        raise NotFoundError(entity_type, prefix)
    if len(matches) > 1:
        raise AmbiguousIdError(entity_type, prefix, matches)
    return matches[0]
