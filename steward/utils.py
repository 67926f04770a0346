"""Shared utility functions for Steward."""

from __future__ import annotations

import asyncio
import math
import re
import secrets
import time

_WS_RE = re.compile(r"\s+")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def gen_id(nbytes: int = 6) -> str:
    """Short random hex id for records."""
    return secrets.token_hex(nbytes)


def to_one_line(value: str | None, max_chars: int = 240) -> str:
    """Collapse whitespace and truncate."""
    return _WS_RE.sub(" ", value or "").strip()[:max_chars]


def clamp_int(value: object, fallback: int, lo: int, hi: int) -> int:
    """Coerce value to an int within [lo, hi].

    Accepts ints, floats and numeric strings. Anything else (including
    bools and NaN) yields ``fallback``.
    """
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(int(value.strip()))
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return max(lo, min(hi, math.trunc(parsed)))


def is_self_cancelled() -> bool:
    """True if the running task itself has a pending cancellation request.

    Awaiting a future that someone else cancelled raises ``CancelledError``
    too; only this check tells the two apart.
    """
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0

