from __future__ import annotations

import time
from datetime import date, datetime, timezone, tzinfo
from typing import Optional

MILLIS_PER_DAY = 86_400_000


def utc_now() -> datetime:
    """Return the current timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def now_millis() -> int:
    """Return the current wall-clock time as epoch milliseconds."""

    return int(time.time() * 1000)


def millis_to_datetime(value: int, tz: Optional[tzinfo] = None) -> datetime:
    """Convert epoch milliseconds into an aware datetime (local time by default)."""

    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.astimezone(tz) if tz is not None else moment.astimezone()


def millis_to_date(value: int, tz: Optional[tzinfo] = None) -> date:
    return millis_to_datetime(value, tz).date()


def age_days(timestamp_ms: int, now_ms: int) -> float:
    """Elapsed days between ``timestamp_ms`` and ``now_ms``, never negative."""

    return max(0.0, (now_ms - timestamp_ms) / MILLIS_PER_DAY)
