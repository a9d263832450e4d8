"""
Report service — decompose a report into router operations, run them
under one deadline and merge the results by key.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from beacon.errors import StoreUnavailableError, ValidationError, validation_details
from beacon.queries.operations import Operation
from beacon.queries.params import (
    EVENT_DIMENSIONS,
    PROPERTY_FILTER_DIMENSIONS,
    SESSION_DIMENSIONS,
    PageMetricParams,
    PropertyBreakdownParams,
    QueryParams,
    SeriesParams,
    SessionMetricParams,
)
from beacon.queries.router import QueryRouter
from beacon.queries.shape import QueryResult
from beacon.schemas.reports import Bucket, Metric, OverviewResponse, ReportDefinition, ReportResponse
from beacon.timeseries import Unit, gap_fill

logger = logging.getLogger("beacon.reports")

_SERIES = {
    Metric.PAGEVIEWS: Operation.PAGEVIEW_SERIES,
    Metric.VISITORS: Operation.VISITOR_SERIES,
    Metric.EVENTS: Operation.EVENT_SERIES,
}


def build_params(model: type[BaseModel], **values: Any) -> BaseModel:
    try:
        return model(**values)
    except PydanticValidationError as e:
        raise ValidationError("Invalid report parameters", detail=validation_details(e)) from e


class ReportService:
    def __init__(self, router: QueryRouter, timeout_secs: float = 30.0):
        self.router = router
        self.timeout_secs = timeout_secs

    async def _gather(self, *calls):
        """Run router calls together; a timeout or any failure cancels the rest."""
        tasks = [asyncio.ensure_future(call) for call in calls]
        try:
            return await asyncio.wait_for(asyncio.gather(*tasks), self.timeout_secs)
        except asyncio.TimeoutError as e:
            logger.warning("⏱️ Report timed out after %.1fs", self.timeout_secs)
            store = "columnar" if self.router.identity.has_analytics_store else "relational"
            raise StoreUnavailableError(
                f"Report exceeded {self.timeout_secs}s",
                store=store,
                code="REPORT_TIMEOUT",
            ) from e
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    def _primary(self, definition: ReportDefinition) -> tuple[Operation, BaseModel]:
        """The operation that produces the report's buckets."""
        base = {
            "website_id": definition.website_id,
            "start_at": definition.start_at,
            "end_at": definition.end_at,
            "filters": definition.filters,
        }
        group_by, metric = definition.group_by, definition.metric

        if group_by is None:
            return _SERIES[metric], build_params(SeriesParams, unit=definition.unit, **base)

        if group_by == "property":
            if metric is not Metric.EVENTS:
                raise ValidationError("Property reports count events", code="UNSUPPORTED_REPORT")
            if not definition.property_name:
                raise ValidationError("property_name is required to group by property", code="UNSUPPORTED_REPORT")
            return Operation.EVENT_PROPERTY_BREAKDOWN, build_params(
                PropertyBreakdownParams,
                event_name=definition.event_name,
                property_name=definition.property_name,
                limit=definition.limit,
                **base,
            )

        if group_by in SESSION_DIMENSIONS and metric is Metric.VISITORS:
            return Operation.SESSION_METRICS, build_params(
                SessionMetricParams, dimension=group_by, limit=definition.limit, **base
            )

        if group_by in EVENT_DIMENSIONS and (metric is Metric.PAGEVIEWS or (metric is Metric.EVENTS and group_by == "event")):
            return Operation.PAGE_METRICS, build_params(
                PageMetricParams, dimension=group_by, limit=definition.limit, **base
            )

        raise ValidationError(
            f"Cannot report {metric.value} grouped by '{group_by}'",
            code="UNSUPPORTED_REPORT",
        )

    async def run(self, definition: ReportDefinition) -> ReportResponse:
        operation, params = self._primary(definition)

        filters = definition.filters
        if definition.group_by == "property":
            # property filters are a subset of the general ones
            filters = {k: v for k, v in filters.items() if k in PROPERTY_FILTER_DIMENSIONS}
        totals_params = build_params(
            QueryParams,
            website_id=definition.website_id,
            start_at=definition.start_at,
            end_at=definition.end_at,
            filters=filters,
        )

        result, totals = await self._gather(
            self.router.execute(operation, params),
            self.router.execute(Operation.WEBSITE_STATS, totals_params),
        )

        rows = result.rows
        if definition.group_by is None:
            rows = gap_fill(rows, definition.start_at, definition.end_at, definition.unit)

        logger.info(
            "📊 Report %s for %s: %d buckets via %s",
            definition.metric.value, definition.website_id, len(rows), operation.value,
        )
        return ReportResponse(
            website_id=definition.website_id,
            unit=definition.unit,
            start_at=params.start_at,
            end_at=params.end_at,
            metric=definition.metric,
            group_by=definition.group_by,
            buckets=[Bucket(key=str(row["x"]), value=int(row["y"])) for row in rows],
            totals=totals.rows[0] if totals.rows else {},
            approximate=result.approximate or totals.approximate,
        )

    async def overview(
        self,
        website_id: str,
        start_at: datetime,
        end_at: datetime,
        unit: Unit = Unit.DAY,
        filters: dict[str, str] | None = None,
    ) -> OverviewResponse:
        """Summary stats plus page-view and visitor series merged per bucket."""
        series_params = build_params(
            SeriesParams,
            website_id=website_id,
            start_at=start_at,
            end_at=end_at,
            unit=unit,
            filters=filters or {},
        )
        stats, pageviews, visitors = await self._gather(
            self.router.execute(Operation.WEBSITE_STATS, series_params),
            self.router.execute(Operation.PAGEVIEW_SERIES, series_params),
            self.router.execute(Operation.VISITOR_SERIES, series_params),
        )
        series = merge_series(
            {"pageviews": pageviews, "visitors": visitors},
            series_params.start_at,
            series_params.end_at,
            unit,
        )
        return OverviewResponse(
            website_id=website_id,
            unit=unit,
            stats=stats.rows[0] if stats.rows else {},
            series=series,
            approximate=any(r.approximate for r in (stats, pageviews, visitors)),
        )


def merge_series(results: dict[str, QueryResult], start_at: datetime, end_at: datetime, unit: Unit) -> list[dict]:
    """Combine several ``{x, y}`` series into one ``{x, <name>...}`` series, gap-filled."""
    merged: dict[str, dict] = {}
    for name, result in results.items():
        for row in gap_fill(result.rows, start_at, end_at, unit):
            merged.setdefault(row["x"], {"x": row["x"]})[name] = row["y"]
    return gap_fill(merged.values(), start_at, end_at, unit, fields=tuple(results))
