"""
Parameter models for router operations.

Both query implementations receive exactly these objects, so every
constraint on a query (dimension names, range size, limits) is enforced
once, before dispatch.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from beacon.models.event import DataType, EventType
from beacon.timeseries import Unit, as_utc, count_buckets

MAX_BUCKETS = 5000

# dimension -> event-level column name (both engines use the same names)
EVENT_DIMENSIONS = {
    "url": "url_path",
    "query": "url_query",
    "referrer": "referrer_domain",
    "title": "page_title",
    "host": "hostname",
    "event": "event_name",
    "tag": "tag",
}

# dimension -> session attribute (denormalized onto events in ClickHouse)
SESSION_DIMENSIONS = {
    "browser": "browser",
    "os": "os",
    "device": "device",
    "screen": "screen",
    "language": "language",
    "country": "country",
}

# Matched after lower-casing both sides; everything else is case-sensitive
CASE_INSENSITIVE_DIMENSIONS = frozenset({"host", "referrer"})

# Property queries only join on what event_data carries in both engines
PROPERTY_FILTER_DIMENSIONS = frozenset({"url", "event"})


def _check_filters(filters: dict[str, str], allowed: set[str] | frozenset[str]) -> dict[str, str]:
    unknown = sorted(set(filters) - set(allowed))
    if unknown:
        raise ValueError(f"Unsupported filter dimension(s): {', '.join(unknown)}")
    return filters


class QueryParams(BaseModel):
    """Website + half-open time range + equality filters."""

    website_id: str = Field(..., min_length=1, max_length=36)
    start_at: datetime
    end_at: datetime
    filters: dict[str, str] = Field(default_factory=dict)

    @field_validator("start_at", "end_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("filters")
    @classmethod
    def _known_filters(cls, value: dict[str, str]) -> dict[str, str]:
        return _check_filters(value, set(EVENT_DIMENSIONS) | set(SESSION_DIMENSIONS))

    @model_validator(mode="after")
    def _ordered_range(self):
        if self.start_at >= self.end_at:
            raise ValueError("start_at must be before end_at")
        return self

    @property
    def event_filters(self) -> dict[str, str]:
        return {k: v for k, v in self.filters.items() if k in EVENT_DIMENSIONS}

    @property
    def session_filters(self) -> dict[str, str]:
        return {k: v for k, v in self.filters.items() if k in SESSION_DIMENSIONS}


class SeriesParams(QueryParams):
    unit: Unit = Unit.DAY

    @model_validator(mode="after")
    def _bounded(self):
        if count_buckets(self.start_at, self.end_at, self.unit) > MAX_BUCKETS:
            raise ValueError(f"Range produces more than {MAX_BUCKETS} {self.unit.value} buckets")
        return self


class PageMetricParams(QueryParams):
    dimension: str
    limit: int = Field(100, ge=1, le=1000)

    @field_validator("dimension")
    @classmethod
    def _event_dimension(cls, value: str) -> str:
        if value not in EVENT_DIMENSIONS:
            raise ValueError(f"'{value}' is not a page dimension")
        return value


class SessionMetricParams(QueryParams):
    dimension: str
    limit: int = Field(100, ge=1, le=1000)

    @field_validator("dimension")
    @classmethod
    def _session_dimension(cls, value: str) -> str:
        if value not in SESSION_DIMENSIONS:
            raise ValueError(f"'{value}' is not a session dimension")
        return value


class PropertyParams(QueryParams):
    """Event-data field listing, optionally narrowed to one event name."""

    event_name: str | None = Field(None, max_length=50)
    limit: int = Field(100, ge=1, le=1000)

    @field_validator("filters")
    @classmethod
    def _property_filters(cls, value: dict[str, str]) -> dict[str, str]:
        return _check_filters(value, PROPERTY_FILTER_DIMENSIONS)


class PropertyBreakdownParams(PropertyParams):
    property_name: str = Field(..., min_length=1, max_length=500)


class FunnelStep(BaseModel):
    type: Literal["url", "event"]
    value: str = Field(..., min_length=1, max_length=500)


class FunnelParams(QueryParams):
    steps: list[FunnelStep] = Field(..., min_length=2, max_length=8)
    window_minutes: int = Field(60, ge=1, le=60 * 24 * 30)


class SessionListParams(QueryParams):
    page_size: int = Field(20, ge=1, le=200)
    cursor: str | None = None

    @field_validator("filters")
    @classmethod
    def _session_only(cls, value: dict[str, str]) -> dict[str, str]:
        return _check_filters(value, set(SESSION_DIMENSIONS))


class SessionVolumeParams(BaseModel):
    website_id: str
    session_ids: list[str]


class ActiveParams(BaseModel):
    website_id: str
    minutes: int = Field(5, ge=1, le=60)
    now: datetime | None = None


# ── ingestion ─────────────────────────────────────────────


class WebsiteLookup(BaseModel):
    website_id: str


class DataField(BaseModel):
    """One flattened, typed property value."""

    key: str = Field(..., max_length=500)
    data_type: DataType
    string_value: str | None = Field(None, max_length=500)
    number_value: Decimal | None = None
    date_value: datetime | None = None


class SessionResolve(BaseModel):
    """Everything needed to insert-or-ignore a session row."""

    id: str
    website_id: str
    fingerprint: str
    distinct_id: str | None = None
    hostname: str | None = None
    browser: str | None = None
    os: str | None = None
    device: str | None = None
    screen: str | None = None
    language: str | None = None
    country: str | None = None
    created_at: datetime


class EventWrite(BaseModel):
    id: str
    website_id: str
    session_id: str
    visit_id: str
    created_at: datetime
    event_type: EventType = EventType.PAGE_VIEW
    event_name: str | None = None
    url_path: str = ""
    url_query: str | None = None
    referrer_path: str | None = None
    referrer_query: str | None = None
    referrer_domain: str | None = None
    page_title: str | None = None
    hostname: str | None = None
    tag: str | None = None
    data: list[DataField] = Field(default_factory=list)
    # Session attributes, denormalized onto columnar event rows
    session: SessionResolve


class SessionDataWrite(BaseModel):
    website_id: str
    session_id: str
    created_at: datetime
    data: list[DataField]
