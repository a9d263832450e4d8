"""
Flatten custom-event / identify properties into typed rows.
"""

from __future__ import annotations

import json
import math
import re
from datetime import datetime
from decimal import Decimal
from typing import Any

from beacon.errors import ValidationError
from beacon.models import DataType
from beacon.queries.params import DataField
from beacon.timeseries import as_utc

MAX_KEY_LENGTH = 500
MAX_STRING_LENGTH = 500
# Numeric(19, 4) leaves 15 integer digits
MAX_NUMBER = Decimal("1e15")

_DATE_LIKE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$")


def flatten(data: dict, prefix: str = "") -> list[tuple[str, Any]]:
    """Nested objects become dotted keys; ``None`` values are dropped."""
    items: list[tuple[str, Any]] = []
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            items.extend(flatten(value, name))
        elif value is not None:
            items.append((name, value))
    return items


def _parse_date(value: str) -> datetime | None:
    if not _DATE_LIKE.match(value):
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def to_field(key: str, value: Any) -> DataField:
    key = key[:MAX_KEY_LENGTH]

    if isinstance(value, bool):
        return DataField(key=key, data_type=DataType.BOOLEAN, string_value="true" if value else "false")

    if isinstance(value, (int, float)) and not (isinstance(value, float) and not math.isfinite(value)):
        number = Decimal(str(value))
        if abs(number) < MAX_NUMBER:
            text = format(number.normalize(), "f") if number != number.to_integral_value() else str(int(number))
            return DataField(key=key, data_type=DataType.NUMBER, string_value=text, number_value=number)

    if isinstance(value, str):
        moment = _parse_date(value)
        if moment is not None:
            return DataField(key=key, data_type=DataType.DATE, string_value=moment.isoformat(), date_value=moment)
        return DataField(key=key, data_type=DataType.STRING, string_value=value[:MAX_STRING_LENGTH])

    if isinstance(value, (list, tuple)):
        text = json.dumps(list(value), separators=(",", ":"), default=str)
    else:
        text = str(value)
    return DataField(key=key, data_type=DataType.STRING, string_value=text[:MAX_STRING_LENGTH])


def build_fields(data: dict | None, max_properties: int) -> list[DataField]:
    """Flatten and type ``data``; more than ``max_properties`` keys is a validation error."""
    if not data:
        return []
    items = flatten(data)
    if len(items) > max_properties:
        raise ValidationError(
            f"Too many properties ({len(items)} > {max_properties})",
            code="TOO_MANY_PROPERTIES",
        )
    return [to_field(key, value) for key, value in items]
