"""Shared timestamp parsing and formatting helpers."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_EPOCH_DIGITS_RE = re.compile(r"^\d{10,16}(?:\.\d+)?$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def _from_epoch_millis(value: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(value / 1000.0, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any, default: datetime | None = None) -> datetime:
    """Parse an ISO-8601 string or epoch-milliseconds value into aware UTC.

    Falls back to ``default`` (or now) when the value is absent or unparseable.
    """
    parsed: datetime | None = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, (int, float)):
        parsed = _from_epoch_millis(float(value))
    elif isinstance(value, str):
        token = value.strip()
        if _EPOCH_DIGITS_RE.match(token):
            parsed = _from_epoch_millis(float(token))
        elif token:
            try:
                parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
    elif isinstance(value, datetime):
        parsed = value

    if parsed is None:
        return default or utc_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def file_times(path: Path) -> tuple[datetime, datetime]:
    """Return (created, modified) filesystem timestamps as aware UTC datetimes."""
    stats = path.stat()
    modified = datetime.fromtimestamp(float(stats.st_mtime), timezone.utc)
    created_raw = getattr(stats, "st_birthtime", None) or stats.st_ctime
    created = datetime.fromtimestamp(float(created_raw), timezone.utc)
    return created, modified


def seconds_since(value: datetime, now: datetime | None = None) -> float:
    reference = now or utc_now()
    return (reference - value).total_seconds()
