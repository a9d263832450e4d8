"""
Beacon Analytics — report request/response schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from beacon.queries.params import FunnelStep
from beacon.timeseries import Unit


class Metric(str, Enum):
    PAGEVIEWS = "pageviews"
    VISITORS = "visitors"
    EVENTS = "events"


class ReportDefinition(BaseModel):
    """
    One report: a metric over a time range, either as a time series
    (no ``group_by``) or grouped by a dimension / event property.
    """

    website_id: str = Field(..., min_length=1, max_length=36)
    start_at: datetime
    end_at: datetime
    unit: Unit = Unit.DAY
    metric: Metric = Metric.PAGEVIEWS
    filters: dict[str, str] = Field(default_factory=dict)
    group_by: str | None = None              # dimension name, or "property"
    event_name: str | None = None            # property reports
    property_name: str | None = None         # required when group_by == "property"
    limit: int = Field(100, ge=1, le=1000)


class Bucket(BaseModel):
    key: str
    value: int


class ReportResponse(BaseModel):
    website_id: str
    unit: Unit
    start_at: datetime
    end_at: datetime
    metric: Metric
    group_by: str | None = None
    buckets: list[Bucket]
    totals: dict[str, int] = Field(default_factory=dict)
    approximate: bool = False


class OverviewPoint(BaseModel):
    x: str
    pageviews: int
    visitors: int


class OverviewResponse(BaseModel):
    website_id: str
    unit: Unit
    stats: dict[str, int]
    series: list[OverviewPoint]
    approximate: bool = False


class QueryResultResponse(BaseModel):
    rows: list[dict[str, Any]]
    approximate: bool = False
    next_cursor: str | None = None


class FunnelRequest(BaseModel):
    start_at: datetime
    end_at: datetime
    steps: list[FunnelStep]
    window_minutes: int = 60
    filters: dict[str, str] = Field(default_factory=dict)
