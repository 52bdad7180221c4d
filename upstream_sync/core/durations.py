"""Duration syntax shared by settings and server-list options.

Values look like ``5s``, ``1m30s``, ``2000ms`` or a bare ``10`` (seconds).
Units, largest first: ``y M w d h m s ms``. Each unit may appear once, in
descending order, and a bare number is only allowed as the last part.
"""
from __future__ import annotations

import re

_UNITS_MS: dict[str, int] = {
    "y": 365 * 24 * 3600 * 1000,
    "M": 30 * 24 * 3600 * 1000,
    "w": 7 * 24 * 3600 * 1000,
    "d": 24 * 3600 * 1000,
    "h": 3600 * 1000,
    "m": 60 * 1000,
    "s": 1000,
    "ms": 1,
}
_ORDER = ["y", "M", "w", "d", "h", "m", "s", "ms"]
_PART = re.compile(r"\s*(\d+)(ms|[yMwdhms])?")


def _parse(value: str, allow_ms: bool) -> int:
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    total = 0
    pos = 0
    last_rank = -1
    while pos < len(text):
        m = _PART.match(text, pos)
        if m is None:
            raise ValueError(f"invalid duration {value!r}")
        number, unit = int(m.group(1)), m.group(2)
        pos = m.end()
        if unit is None:
            # a bare number counts as seconds and must close the value
            if text[pos:].strip():
                raise ValueError(f"invalid duration {value!r}")
            unit = "s"
        if unit == "ms" and not allow_ms:
            raise ValueError(f"milliseconds are not allowed in {value!r}")
        rank = _ORDER.index(unit)
        if rank <= last_rank:
            raise ValueError(f"units out of order in {value!r}")
        last_rank = rank
        total += number * _UNITS_MS[unit]
    return total


def parse_duration_ms(value: str) -> int:
    """Parse a duration and return it in milliseconds."""
    return _parse(value, allow_ms=True)


def parse_duration_s(value: str) -> int:
    """Parse a duration that must be a whole number of seconds."""
    return _parse(value, allow_ms=False) // 1000
