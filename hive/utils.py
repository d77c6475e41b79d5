"""Shared utility functions for Hive."""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime
from uuid import uuid4

_WS = re.compile(r"\s+")


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    """Short random hex id for tasks, schedules, runs and envelopes."""
    return uuid4().hex[:12]


def normalize_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return _WS.sub(" ", value).strip()


def clamp_int(value: object, fallback: int, lo: int, hi: int) -> int:
    """Parse an int-ish value and clamp it into [lo, hi].

    Non-numeric input (None, "abc", NaN) returns ``fallback``.
    """
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = int(value.strip(), 10)
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(parsed):
        return fallback
    return max(lo, min(hi, int(parsed)))


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
