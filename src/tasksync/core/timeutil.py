# src/tasksync/core/timeutil.py

"""
Timestamp normalisation.

Internally every timestamp is an int of epoch milliseconds (or None).
The remote backend speaks ISO-8601 strings, older rows and some clients send
epoch numbers. Everything is normalised here before any comparison, because
watermark and dirty checks silently break on mixed formats.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(value: Any) -> int | None:
    """
    Normalise a timestamp to epoch milliseconds.

    Accepts: None, int/float epoch milliseconds, datetime (naive = UTC),
    ISO-8601 strings with "Z" or an explicit offset, numeric strings.
    Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return int(round(dt.timestamp() * 1000))
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            return int(float(s))
        except ValueError:
            pass
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            return to_ms(datetime.fromisoformat(s))
        except ValueError as e:
            raise ValueError(f"not a timestamp: {value!r}") from e
    raise ValueError(f"not a timestamp: {value!r}")


def to_iso(ms: int | None) -> str | None:
    """Epoch milliseconds -> ISO-8601 UTC string (millisecond precision)."""
    if ms is None:
        return None
    dt = datetime.fromtimestamp(ms / 1000, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
