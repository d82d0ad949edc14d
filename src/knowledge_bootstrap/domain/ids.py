"""Session and dimension identifiers.

Session IDs are ``bs-<ULID>``: 48 bits of millisecond time followed by 80 random
bits, rendered as 26 Crockford Base32 characters, so IDs sort by start time.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

SESSION_ID_PREFIX: Final[str] = "bs-"
ULID_LENGTH: Final[int] = 26

_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_RANDOM_BITS: Final[int] = 80
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_ULID_RE: Final[re.Pattern[str]] = re.compile(rf"^[{_ALPHABET}]{{{ULID_LENGTH}}}$")

# Dimension IDs double as checkpoint file stems: "project-profile", "code-pattern".
_DIMENSION_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    now_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= now_ms <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {now_ms}")
    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BITS // 8)
    if len(entropy) != _RANDOM_BITS // 8:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")

    value = (now_ms << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    digits: list[str] = []
    for _ in range(ULID_LENGTH):
        value, digit = divmod(value, 32)
        digits.append(_ALPHABET[digit])
    return "".join(reversed(digits))


def generate_session_id(
    *, timestamp_ms: int | None = None, randbytes: Callable[[int], bytes] | None = None
) -> str:
    return SESSION_ID_PREFIX + generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_session_id(session_id: str) -> None:
    """Raise ``ValueError`` unless ``session_id`` is ``bs-`` followed by a ULID."""

    if not isinstance(session_id, str) or not session_id.startswith(SESSION_ID_PREFIX):
        raise ValueError(f"session id must start with {SESSION_ID_PREFIX!r}: {session_id!r}")
    if not _ULID_RE.fullmatch(session_id[len(SESSION_ID_PREFIX) :].upper()):
        raise ValueError(f"session id does not end in a valid ULID: {session_id!r}")


def validate_dimension_id(dim_id: str) -> str:
    """Return ``dim_id`` stripped, or raise ``ValueError`` if it is not a filename-safe slug."""

    if not isinstance(dim_id, str):
        raise ValueError(f"dimension id must be a string, got {type(dim_id).__name__}")
    normalized = dim_id.strip()
    if not _DIMENSION_ID_RE.fullmatch(normalized):
        raise ValueError(f"dimension id must be a filename-safe slug (got {dim_id!r})")
    return normalized


__all__ = [
    "SESSION_ID_PREFIX",
    "ULID_LENGTH",
    "generate_session_id",
    "generate_ulid",
    "validate_dimension_id",
    "validate_session_id",
]
