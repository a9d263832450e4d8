"""
ClickHouse implementations of the analytics operations.

Events are stored with their session attributes denormalized onto each
row, so no read here needs a join.  Distinct counts use ``uniq`` and are
flagged approximate once they cross the configured threshold.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from beacon.models import EventType
from beacon.queries.clickhouse import ClickHouseClient
from beacon.queries.params import (
    CASE_INSENSITIVE_DIMENSIONS,
    EVENT_DIMENSIONS,
    SESSION_DIMENSIONS,
    ActiveParams,
    EventWrite,
    FunnelParams,
    PageMetricParams,
    PropertyBreakdownParams,
    PropertyParams,
    QueryParams,
    SeriesParams,
    SessionMetricParams,
    SessionVolumeParams,
)
from beacon.queries.shape import (
    QueryResult,
    funnel_result,
    levels_to_reached,
    metric_result,
    series_result,
    stats_result,
)
from beacon.timeseries import Unit, truncate

logger = logging.getLogger("beacon.columnar")

DATETIME = "DateTime64(3, 'UTC')"

_BUCKET = {
    Unit.HOUR: "toStartOfHour({col})",
    Unit.DAY: "toStartOfDay({col})",
    Unit.MONTH: "toDateTime(toStartOfMonth({col}), 'UTC')",
}

_EVENT_DATA_COLUMNS = {"url": "url_path", "event": "event_name"}


def _bucket(column: str, unit: Unit) -> str:
    return "formatDateTime(%s, '%%Y-%%m-%%d %%H:00:00', 'UTC')" % _BUCKET[unit].format(col=column)


def _column(dimension: str) -> str:
    return EVENT_DIMENSIONS.get(dimension) or SESSION_DIMENSIONS[dimension]


class ColumnarQueries:
    """Hand-written ClickHouse SQL for every analytics-placed operation."""

    store = "columnar"

    def __init__(self, client: ClickHouseClient, approx_threshold: int = 65536):
        self._client = client
        self._threshold = approx_threshold

    def _approximate(self, *counts) -> bool:
        return any(int(c or 0) >= self._threshold for c in counts)

    def _where(
        self,
        params: QueryParams,
        event_type: EventType | None = EventType.PAGE_VIEW,
        columns: dict[str, str] | None = None,
    ) -> tuple[str, dict]:
        """WHERE body and its parameters for website, range, type and filters."""
        clauses = [
            "website_id = {website_id:UUID}",
            f"created_at >= {{start_at:{DATETIME}}}",
            f"created_at < {{end_at:{DATETIME}}}",
        ]
        values: dict = {"website_id": params.website_id, "start_at": params.start_at, "end_at": params.end_at}
        if event_type is not None:
            clauses.append(f"event_type = {int(event_type)}")

        for i, (dimension, value) in enumerate(sorted(params.filters.items())):
            column = (columns or {}).get(dimension) or _column(dimension)
            name = f"f{i}"
            if dimension in CASE_INSENSITIVE_DIMENSIONS:
                clauses.append(f"lower({column}) = {{{name}:String}}")
                values[name] = value.lower()
            else:
                clauses.append(f"{column} = {{{name}:String}}")
                values[name] = value
        return " AND ".join(clauses), values

    # ── ingestion ─────────────────────────────────────────

    async def save_event(self, params: EventWrite) -> str:
        session = params.session
        await self._client.insert("website_event", [{
            "website_id": params.website_id,
            "session_id": params.session_id,
            "visit_id": params.visit_id,
            "event_id": params.id,
            "distinct_id": session.distinct_id or "",
            "hostname": params.hostname or session.hostname or "",
            "browser": session.browser or "",
            "os": session.os or "",
            "device": session.device or "",
            "screen": session.screen or "",
            "language": session.language or "",
            "country": session.country or "",
            "url_path": params.url_path or "",
            "url_query": params.url_query or "",
            "referrer_path": params.referrer_path or "",
            "referrer_query": params.referrer_query or "",
            "referrer_domain": params.referrer_domain or "",
            "page_title": params.page_title or "",
            "event_type": int(params.event_type),
            "event_name": params.event_name or "",
            "tag": params.tag or "",
            "created_at": params.created_at,
        }])

        if params.data:
            await self._client.insert("event_data", [
                {
                    "website_id": params.website_id,
                    "session_id": params.session_id,
                    "event_id": params.id,
                    "url_path": params.url_path or "",
                    "event_name": params.event_name or "",
                    "data_key": field.key,
                    "string_value": field.string_value,
                    "number_value": field.number_value,
                    "date_value": field.date_value,
                    "data_type": int(field.data_type),
                    "created_at": params.created_at,
                }
                for field in params.data
            ])
        return params.id

    # ── summary ───────────────────────────────────────────

    async def website_stats(self, params: QueryParams) -> QueryResult:
        where, values = self._where(params)
        sql = f"""
            SELECT
                sum(c) AS pageviews,
                uniq(session_id) AS visitors,
                count() AS visits,
                countIf(c = 1) AS bounces,
                sum(dateDiff('second', first_at, last_at)) AS totaltime
            FROM (
                SELECT visit_id, any(session_id) AS session_id, count() AS c,
                       min(created_at) AS first_at, max(created_at) AS last_at
                FROM website_event
                WHERE {where}
                GROUP BY visit_id
            )
        """
        rows = await self._client.query(sql, values)
        row = rows[0] if rows else None
        return stats_result(row, self._approximate((row or {}).get("visitors")))

    # ── time series ───────────────────────────────────────

    def _use_hourly(self, params: SeriesParams) -> bool:
        """Unfiltered pageview/visitor series on hour boundaries read the rollup."""
        return (
            not params.filters
            and truncate(params.start_at, Unit.HOUR) == params.start_at
            and truncate(params.end_at, Unit.HOUR) == params.end_at
        )

    async def _series(self, params: SeriesParams, value: str, event_type: EventType, distinct: bool) -> QueryResult:
        where, values = self._where(params, event_type)
        sql = f"""
            SELECT {_bucket('created_at', params.unit)} AS x, {value} AS y
            FROM website_event
            WHERE {where}
            GROUP BY x
            ORDER BY x
        """
        rows = await self._client.query(sql, values)
        approximate = distinct and self._approximate(*(row["y"] for row in rows))
        return series_result(rows, params, approximate)

    async def _hourly_series(self, params: SeriesParams, value: str, distinct: bool) -> QueryResult:
        sql = f"""
            SELECT {_bucket('bucket_at', params.unit)} AS x, {value} AS y
            FROM website_event_stats_hourly
            WHERE website_id = {{website_id:UUID}}
              AND bucket_at >= {{start_at:{DATETIME}}}
              AND bucket_at < {{end_at:{DATETIME}}}
            GROUP BY x
            ORDER BY x
        """
        rows = await self._client.query(sql, {
            "website_id": params.website_id,
            "start_at": params.start_at,
            "end_at": params.end_at,
        })
        approximate = distinct and self._approximate(*(row["y"] for row in rows))
        return series_result(rows, params, approximate)

    async def pageview_series(self, params: SeriesParams) -> QueryResult:
        if self._use_hourly(params):
            return await self._hourly_series(params, "sum(views)", distinct=False)
        return await self._series(params, "count()", EventType.PAGE_VIEW, distinct=False)

    async def visitor_series(self, params: SeriesParams) -> QueryResult:
        if self._use_hourly(params):
            return await self._hourly_series(params, "uniqMerge(visitors)", distinct=True)
        return await self._series(params, "uniq(session_id)", EventType.PAGE_VIEW, distinct=True)

    async def event_series(self, params: SeriesParams) -> QueryResult:
        return await self._series(params, "count()", EventType.CUSTOM, distinct=False)

    # ── dimension metrics ─────────────────────────────────

    async def page_metrics(self, params: PageMetricParams) -> QueryResult:
        event_type = EventType.CUSTOM if params.dimension == "event" else EventType.PAGE_VIEW
        where, values = self._where(params, event_type)
        sql = f"""
            SELECT {_column(params.dimension)} AS x, count() AS y
            FROM website_event
            WHERE {where}
            GROUP BY x
            ORDER BY y DESC, x ASC
            LIMIT {int(params.limit)}
        """
        return metric_result(await self._client.query(sql, values), params.limit)

    async def session_metrics(self, params: SessionMetricParams) -> QueryResult:
        where, values = self._where(params)
        sql = f"""
            SELECT {_column(params.dimension)} AS x, uniq(session_id) AS y
            FROM website_event
            WHERE {where}
            GROUP BY x
            ORDER BY y DESC, x ASC
            LIMIT {int(params.limit)}
        """
        rows = await self._client.query(sql, values)
        return metric_result(rows, params.limit, self._approximate(*(row["y"] for row in rows)))

    # ── event properties ──────────────────────────────────

    def _property_where(self, params: PropertyParams) -> tuple[str, dict]:
        where, values = self._where(params, event_type=None, columns=_EVENT_DATA_COLUMNS)
        if params.event_name:
            where += " AND event_name = {event_name:String}"
            values["event_name"] = params.event_name
        return where, values

    async def event_property_fields(self, params: PropertyParams) -> QueryResult:
        where, values = self._property_where(params)
        sql = f"""
            SELECT data_key AS x, count() AS y
            FROM event_data
            WHERE {where}
            GROUP BY x
            ORDER BY y DESC, x ASC
            LIMIT {int(params.limit)}
        """
        return metric_result(await self._client.query(sql, values), params.limit)

    async def event_property_breakdown(self, params: PropertyBreakdownParams) -> QueryResult:
        where, values = self._property_where(params)
        values["property_name"] = params.property_name
        sql = f"""
            SELECT ifNull(string_value, '') AS x, count() AS y
            FROM event_data
            WHERE {where} AND data_key = {{property_name:String}}
            GROUP BY x
            ORDER BY y DESC, x ASC
            LIMIT {int(params.limit)}
        """
        return metric_result(await self._client.query(sql, values), params.limit)

    # ── funnel ────────────────────────────────────────────

    async def funnel(self, params: FunnelParams) -> QueryResult:
        """``windowFunnel`` gives each session's furthest step; levels roll up into reach counts."""
        where, values = self._where(params, event_type=None)
        conditions = []
        for number, step in enumerate(params.steps, start=1):
            name = f"s{number}"
            values[name] = step.value
            if step.type == "url":
                conditions.append(f"(event_type = {int(EventType.PAGE_VIEW)} AND url_path = {{{name}:String}})")
            else:
                conditions.append(f"(event_type = {int(EventType.CUSTOM)} AND event_name = {{{name}:String}})")

        window = int(params.window_minutes) * 60
        sql = f"""
            SELECT level, count() AS visitors
            FROM (
                SELECT session_id,
                       windowFunnel({window}, 'strict_increase')(toDateTime(created_at), {', '.join(conditions)}) AS level
                FROM website_event
                WHERE {where} AND ({' OR '.join(conditions)})
                GROUP BY session_id
            )
            WHERE level > 0
            GROUP BY level
            ORDER BY level
        """
        rows = await self._client.query(sql, values)
        levels = {int(row["level"]): int(row["visitors"]) for row in rows}
        return funnel_result(params.steps, levels_to_reached(levels, len(params.steps)))

    # ── realtime ──────────────────────────────────────────

    async def active_visitors(self, params: ActiveParams) -> QueryResult:
        now = params.now or datetime.now(timezone.utc)
        sql = f"""
            SELECT uniq(session_id) AS visitors
            FROM website_event
            WHERE website_id = {{website_id:UUID}}
              AND created_at >= {{since:{DATETIME}}}
              AND created_at <= {{now:{DATETIME}}}
        """
        rows = await self._client.query(sql, {
            "website_id": params.website_id,
            "since": now - timedelta(minutes=params.minutes),
            "now": now,
        })
        visitors = int(rows[0]["visitors"]) if rows else 0
        return QueryResult(rows=[{"visitors": visitors}], approximate=self._approximate(visitors))

    # ── session volume ────────────────────────────────────

    async def session_volume(self, params: SessionVolumeParams) -> QueryResult:
        if not params.session_ids:
            return QueryResult()
        sql = f"""
            SELECT toString(session_id) AS id,
                   countIf(event_type = {int(EventType.PAGE_VIEW)}) AS views,
                   countIf(event_type = {int(EventType.CUSTOM)}) AS events
            FROM website_event
            WHERE website_id = {{website_id:UUID}} AND session_id IN {{session_ids:Array(UUID)}}
            GROUP BY session_id
        """
        rows = await self._client.query(sql, {
            "website_id": params.website_id,
            "session_ids": params.session_ids,
        })
        return QueryResult(rows=rows)
