"""Shared timestamp parsing and elapsed-time helpers."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
            try:
                parsed = datetime.strptime(cleaned, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string, a datetime, or epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch_millis(float(value))
    if isinstance(value, str):
        token = value.strip()
        if token.isdigit():
            return _from_epoch_millis(float(token))
        return _parse_datetime_token(token)
    return None


def _from_epoch_millis(millis: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def normalize_timestamp(value: Any) -> str:
    """Convert mixed timestamp inputs into ISO strings; empty when unparseable."""
    parsed = parse_timestamp(value)
    return format_datetime_utc(parsed) if parsed else ""


def elapsed_seconds(timestamp: str, now: datetime) -> float:
    """Seconds between ``timestamp`` and ``now``.

    A missing or unparseable timestamp counts as infinitely old.
    """
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return math.inf
    return (now - parsed).total_seconds()
