"""
Sortable identifiers (ULID) shared by every table.

Format: 26 Crockford base32 characters = 48-bit millisecond timestamp
followed by 80 random bits.  Ids generated in the same millisecond by this
process are strictly increasing (the random part is incremented), so
``ORDER BY id`` matches creation order.

Usage:
    from app.utils.ids import new_ulid, ULID_LENGTH

    id = db.Column(db.String(ULID_LENGTH), primary_key=True, default=new_ulid)
"""

import secrets
import threading
import time
from datetime import datetime, timezone

ULID_LENGTH = 26

_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_DECODE = {ch: i for i, ch in enumerate(_ALPHABET)}
_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1
_TIME_MAX = (1 << 48) - 1

_lock = threading.Lock()
_last_ms = -1
_last_random = 0


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(timestamp_ms: int | None = None) -> str:
    """Return a new 26-character ULID string.

    Args:
        timestamp_ms: Optional Unix time in milliseconds (defaults to now).

    Raises:
        OverflowError: If the random component is exhausted within one
            millisecond (2**80 ids) or the timestamp exceeds 48 bits.
    """
    global _last_ms, _last_random

    ms = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    if ms < 0 or ms > _TIME_MAX:
        raise OverflowError(f"ULID timestamp out of range: {ms}")

    with _lock:
        if ms <= _last_ms:
            # Same (or earlier, clock skew) millisecond: keep monotonic order
            ms = _last_ms
            rand = _last_random + 1
            if rand > _RANDOM_MAX:
                raise OverflowError("ULID random component exhausted for this millisecond")
        else:
            rand = secrets.randbits(_RANDOM_BITS)
        _last_ms = ms
        _last_random = rand

    return _encode(ms, 10) + _encode(rand, 16)


def is_valid_ulid(value) -> bool:
    """True if *value* is a syntactically valid ULID string."""
    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        return False
    if any(ch not in _DECODE for ch in value.upper()):
        return False
    # First char carries only 3 significant bits (48-bit timestamp)
    return _DECODE[value[0].upper()] <= 7


def ulid_timestamp(value: str) -> datetime:
    """Decode the creation time embedded in a ULID."""
    if not is_valid_ulid(value):
        raise ValueError(f"Invalid ULID: {value!r}")
    ms = 0
    for ch in value[:10].upper():
        ms = (ms << 5) | _DECODE[ch]
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
