"""Datetime helpers shared by the consent and ingestion packages.

Aggregator payloads mix ``2024-03-31``, ``2024-03-31T10:00:00Z`` and
``2024-03-31T15:30:00+05:30``. Everything is normalised to UTC here so the
rest of the code never calls ``dateutil`` or ``datetime.fromisoformat``
directly.
"""
from __future__ import annotations

import datetime as _dt
from typing import Any, Optional, Union

from dateutil.parser import isoparse as _isoparse

__all__ = ["parse_iso8601", "parse_optional", "utcnow", "to_naive_utc"]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    """Return *dt* converted to UTC and TZ-aware."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def parse_iso8601(value: Union[str, _dt.datetime, _dt.date]) -> _dt.datetime:
    """Parse *value* into a timezone-aware UTC datetime.

    Accepts ISO-8601 strings, dates or datetimes. A bare date is taken as
    midnight UTC.
    """
    if isinstance(value, _dt.datetime):
        return _ensure_utc(value)
    if isinstance(value, _dt.date):
        return _dt.datetime(value.year, value.month, value.day, tzinfo=_dt.timezone.utc)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value.strip())
    except Exception as exc:
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return _ensure_utc(dt)


def parse_optional(value: Any) -> Optional[_dt.datetime]:
    """Like :func:`parse_iso8601` but maps empty values to ``None``."""
    if value is None or value == "":
        return None
    return parse_iso8601(value)


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def to_naive_utc(value: _dt.datetime) -> _dt.datetime:
    """Drop tzinfo after converting to UTC (SQLite stores naive values)."""
    return _ensure_utc(value).replace(tzinfo=None)
