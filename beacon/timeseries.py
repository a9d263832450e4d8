"""
Time-bucket arithmetic shared by both query implementations and the
reporting path.

All buckets are UTC.  A requested range is half-open ``[start, end)``;
its first bucket is the truncation of ``start``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Iterator


class Unit(str, Enum):
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


BUCKET_KEY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Both engines render buckets as text in this layout before it reaches Python
_SQL_BUCKET_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d")


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC (SQLite and MySQL return them)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate(value: datetime, unit: Unit | str) -> datetime:
    unit = Unit(unit)
    value = as_utc(value)
    if unit is Unit.HOUR:
        return value.replace(minute=0, second=0, microsecond=0)
    if unit is Unit.DAY:
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def advance(value: datetime, unit: Unit | str) -> datetime:
    """Start of the bucket after ``value`` (which must already be truncated)."""
    unit = Unit(unit)
    if unit is Unit.HOUR:
        return value + timedelta(hours=1)
    if unit is Unit.DAY:
        return value + timedelta(days=1)
    if value.month == 12:
        return value.replace(year=value.year + 1, month=1)
    return value.replace(month=value.month + 1)


def iter_buckets(start: datetime, end: datetime, unit: Unit | str) -> Iterator[datetime]:
    current = truncate(start, unit)
    end = as_utc(end)
    while current < end:
        yield current
        current = advance(current, unit)


def count_buckets(start: datetime, end: datetime, unit: Unit | str) -> int:
    """Cheap upper bound used to reject absurd ranges before querying."""
    span = as_utc(end) - as_utc(start)
    unit = Unit(unit)
    if unit is Unit.HOUR:
        return int(span.total_seconds() // 3600) + 1
    if unit is Unit.DAY:
        return span.days + 1
    return span.days // 28 + 1


def format_bucket(value: datetime) -> str:
    return as_utc(value).strftime(BUCKET_KEY_FORMAT)


def parse_bucket(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    for fmt in _SQL_BUCKET_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized bucket value: {value!r}")


def gap_fill(
    rows: Iterable[dict],
    start: datetime,
    end: datetime,
    unit: Unit | str,
    fields: tuple[str, ...] = ("y",),
    key: str = "x",
) -> list[dict]:
    """
    Return one row per bucket in ``[start, end)``, ascending.

    Rows already present keep their values; missing buckets get zero for every
    field in ``fields``.  Rows whose key falls outside the range are dropped.
    """
    by_key: dict[str, dict] = {}
    for row in rows:
        bucket_key = format_bucket(parse_bucket(row[key]))
        by_key[bucket_key] = {**row, key: bucket_key}

    filled: list[dict] = []
    for bucket in iter_buckets(start, end, unit):
        bucket_key = format_bucket(bucket)
        row = by_key.get(bucket_key)
        if row is None:
            row = {key: bucket_key, **{f: 0 for f in fields}}
        filled.append(row)
    return filled
