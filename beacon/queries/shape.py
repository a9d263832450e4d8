"""
Result shaping shared by the relational and columnar implementations.

Each implementation hands raw rows to these functions, so field names,
ordering, bucket keys and zero-fill are decided in one place.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from beacon.errors import ValidationError
from beacon.queries.params import FunnelStep, SeriesParams
from beacon.timeseries import as_utc, gap_fill


@dataclass
class QueryResult:
    rows: list[dict] = field(default_factory=list)
    approximate: bool = False
    next_cursor: str | None = None

    def to_dict(self) -> dict:
        return {"rows": self.rows, "approximate": self.approximate, "next_cursor": self.next_cursor}


STATS_FIELDS = ("pageviews", "visitors", "visits", "bounces", "totaltime")
VOLUME_FIELDS = ("views", "events")


def _number(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (float, Decimal)):
        return int(round(value))
    return int(value)


def series_result(rows: Iterable[dict], params: SeriesParams, approximate: bool = False) -> QueryResult:
    """Gap-filled ascending ``{x, y}`` rows."""
    cleaned = [{"x": row["x"], "y": _number(row["y"])} for row in rows]
    return QueryResult(
        rows=gap_fill(cleaned, params.start_at, params.end_at, params.unit),
        approximate=approximate,
    )


def metric_result(rows: Iterable[dict], limit: int, approximate: bool = False) -> QueryResult:
    """``{x, y}`` rows, count descending then value ascending."""
    cleaned = [{"x": "" if row["x"] is None else str(row["x"]), "y": _number(row["y"])} for row in rows]
    cleaned.sort(key=lambda r: (-r["y"], r["x"]))
    return QueryResult(rows=cleaned[:limit], approximate=approximate)


def stats_result(row: dict | None, approximate: bool = False) -> QueryResult:
    row = row or {}
    return QueryResult(
        rows=[{name: _number(row.get(name)) for name in STATS_FIELDS}],
        approximate=approximate,
    )


def funnel_result(steps: list[FunnelStep], reached: dict[int, int]) -> QueryResult:
    """
    ``reached`` maps step number (1-based) to sessions that completed it.

    Rows carry ``dropped`` (lost since the previous step), ``dropoff``
    (that loss as a fraction of the previous step) and ``remaining``
    (fraction of step one still present).
    """
    rows: list[dict] = []
    first = reached.get(1, 0)
    previous = None
    for number, step in enumerate(steps, start=1):
        visitors = reached.get(number, 0)
        dropped = 0 if previous is None else previous - visitors
        rows.append({
            "x": step.value,
            "type": step.type,
            "y": visitors,
            "dropped": dropped,
            "dropoff": (dropped / previous) if previous else None,
            "remaining": (visitors / first) if first else 0.0,
        })
        previous = visitors
    return QueryResult(rows=rows)


def levels_to_reached(levels: dict[int, int], step_count: int) -> dict[int, int]:
    """Turn "sessions whose furthest step is N" into "sessions that reached N"."""
    reached: dict[int, int] = {}
    running = 0
    for number in range(step_count, 0, -1):
        running += levels.get(number, 0)
        reached[number] = running
    return reached


def session_row(row: dict) -> dict:
    created = row.get("created_at")
    return {
        "id": row["id"],
        "website_id": row["website_id"],
        "distinct_id": row.get("distinct_id"),
        "hostname": row.get("hostname"),
        "browser": row.get("browser"),
        "os": row.get("os"),
        "device": row.get("device"),
        "screen": row.get("screen"),
        "language": row.get("language"),
        "country": row.get("country"),
        "created_at": as_utc(created).isoformat() if isinstance(created, datetime) else created,
    }


def merge_on_key(
    primary: list[dict],
    secondary: Iterable[dict],
    key: str,
    fields: tuple[str, ...],
) -> list[dict]:
    """Attach ``fields`` from ``secondary`` to ``primary`` rows; primary order wins, absent → 0."""
    lookup = {str(row[key]): row for row in secondary}
    merged = []
    for row in primary:
        other = lookup.get(str(row[key]), {})
        merged.append({**row, **{f: _number(other.get(f)) for f in fields}})
    return merged


# ── cursors ───────────────────────────────────────────────


def encode_cursor(created_at: datetime, row_id: str) -> str:
    raw = f"{as_utc(created_at).isoformat()}|{row_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        stamp, row_id = raw.split("|", 1)
        return as_utc(datetime.fromisoformat(stamp)), row_id
    except (ValueError, binascii.Error, UnicodeDecodeError) as e:
        raise ValidationError("Malformed cursor", detail=str(e)) from e
