"""
auth/ids.py -- ULID identifiers for every auth entity and every token JTI.

A ULID is 128 bits: a 48-bit millisecond timestamp followed by 80 random bits,
rendered as 26 characters of Crockford base32. Lexicographic order matches
creation order, which keeps session listings and blacklist sweeps index-friendly.

Within one millisecond, new_ulid() increments the random part of the previous
value instead of drawing a fresh one, so identifiers minted by a single process
are strictly increasing.

Layer rule: stdlib only.
"""

from __future__ import annotations

import secrets
import threading
import time
from datetime import datetime, timedelta, timezone

ULID_LENGTH = 26

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_DECODE = {ch: i for i, ch in enumerate(_ALPHABET)}
_RANDOM_BITS = 80
_RANDOM_MASK = (1 << _RANDOM_BITS) - 1
# 26 base32 chars hold 130 bits; the first char may therefore only be 0-7.
_MAX_FIRST_CHAR = "7"

_lock = threading.Lock()
_last_ms = -1
_last_random = 0


def _encode(value: int) -> str:
    chars = []
    for _ in range(ULID_LENGTH):
        chars.append(_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def datetime_to_ms(value: datetime) -> int:
    """Milliseconds since the Unix epoch for an aware datetime, without float rounding."""
    return (value - _EPOCH) // timedelta(milliseconds=1)


def ms_to_datetime(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def new_ulid(timestamp_ms: int | None = None) -> str:
    """Return a fresh, time-ordered ULID string.

    timestamp_ms pins the time component to a caller's clock (token JTIs
    carry the issuing engine's time). Such values skip the per-process
    monotonic counter and get fresh random bits.
    """
    global _last_ms, _last_random
    if timestamp_ms is not None:
        return _encode((timestamp_ms << _RANDOM_BITS) | secrets.randbits(_RANDOM_BITS))
    with _lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms <= _last_ms:
            now_ms = _last_ms
            _last_random = (_last_random + 1) & _RANDOM_MASK
            if _last_random == 0:
                # Random space for this millisecond is exhausted; borrow the next one.
                now_ms += 1
                _last_random = secrets.randbits(_RANDOM_BITS)
        else:
            _last_random = secrets.randbits(_RANDOM_BITS)
        _last_ms = now_ms
        return _encode((now_ms << _RANDOM_BITS) | _last_random)


def is_valid_ulid(value: str) -> bool:
    """Return True if value is a canonical 26-char Crockford base32 ULID."""
    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        return False
    if value[0] > _MAX_FIRST_CHAR:
        return False
    return all(ch in _DECODE for ch in value)


def ulid_timestamp_ms(value: str) -> int:
    """Return the millisecond timestamp encoded in a ULID.

    Raises ValueError if value is not a valid ULID.
    """
    if not is_valid_ulid(value):
        raise ValueError(f"not a ULID: {value!r}")
    number = 0
    for ch in value:
        number = (number << 5) | _DECODE[ch]
    return number >> _RANDOM_BITS
