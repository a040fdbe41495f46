from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> datetime | None:
    """Best-effort timestamp parsing; returns None instead of raising.

    Accepts RFC 3339 text (``Z`` or numeric offsets, up to nanosecond
    fractions), naive ISO text read as UTC, epoch numbers in seconds,
    milliseconds or nanoseconds, and datetime values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if _looks_numeric(text):
        try:
            return _from_epoch(float(text))
        except (ValueError, OverflowError):
            return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat only understands microsecond precision
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def duration_ms(start: Any, end: Any) -> int | None:
    start_dt = parse_timestamp(start)
    end_dt = parse_timestamp(end)
    if start_dt is None or end_dt is None:
        return None
    return int((end_dt - start_dt) / timedelta(milliseconds=1))


def _looks_numeric(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


def _from_epoch(value: float) -> datetime | None:
    try:
        if value > 1_000_000_000_000_000:
            return datetime.fromtimestamp(value / 1_000_000_000, tz=timezone.utc)
        if value > 1_000_000_000_000:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
