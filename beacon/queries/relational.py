"""
Relational query implementations (PostgreSQL / MySQL / SQLite).

Every operation is written once with SQLAlchemy constructs; anything
that differs between dialects goes through ``beacon.queries.dialect``.
Each method opens its own session for exactly one logical query and
closes it before returning.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, case, distinct, func, literal_column, or_, select, union_all
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from beacon.errors import AnalyticsError, QueryFailedError, StoreUnavailableError
from beacon.models import EventData, EventType, SessionData, VisitorSession, Website, WebsiteEvent
from beacon.queries.dialect import add_minutes, date_bucket, insert_ignore, seconds_between, text_equals
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
    SessionDataWrite,
    SessionListParams,
    SessionMetricParams,
    SessionResolve,
    SessionVolumeParams,
    WebsiteLookup,
)
from beacon.queries.shape import (
    QueryResult,
    VOLUME_FIELDS,
    decode_cursor,
    encode_cursor,
    funnel_result,
    merge_on_key,
    metric_result,
    series_result,
    session_row,
    stats_result,
)

logger = logging.getLogger("beacon.relational")

STORE = "relational"

# Inline empty-string literal so GROUP BY and SELECT render identical text
EMPTY = literal_column("''")


def _translate_errors(fn):
    """Re-raise driver/ORM failures as the store error taxonomy."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except AnalyticsError:
            raise
        except (OperationalError, InterfaceError, DisconnectionError) as e:
            raise StoreUnavailableError(str(getattr(e, "orig", e) or e), store=STORE) from e
        except (asyncio.TimeoutError, ConnectionError) as e:
            raise StoreUnavailableError(f"{type(e).__name__}: {e}", store=STORE) from e
        except SQLAlchemyError as e:
            raise QueryFailedError(str(getattr(e, "orig", e) or e), store=STORE) from e

    return wrapper


def _event_column(dimension: str):
    return getattr(WebsiteEvent, EVENT_DIMENSIONS[dimension])


def _session_column(dimension: str):
    return getattr(VisitorSession, SESSION_DIMENSIONS[dimension])


def _match(column, dimension: str, value: str):
    return text_equals(column, value, case_insensitive=dimension in CASE_INSENSITIVE_DIMENSIONS)


class RelationalQueries:
    """ORM implementation of every router operation."""

    store = STORE

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], dialect_name: str):
        self._sessions = session_factory
        self._dialect = dialect_name

    # ── shared filtering ──────────────────────────────────

    def _scope(
        self,
        stmt,
        params: QueryParams,
        event_type: EventType | None = EventType.PAGE_VIEW,
        session_joined: bool = False,
    ):
        """Website, time range, optional event type and every filter in ``params``."""
        conditions = [
            WebsiteEvent.website_id == params.website_id,
            WebsiteEvent.created_at >= params.start_at,
            WebsiteEvent.created_at < params.end_at,
        ]
        if event_type is not None:
            conditions.append(WebsiteEvent.event_type == int(event_type))
        for dimension, value in params.event_filters.items():
            conditions.append(_match(_event_column(dimension), dimension, value))

        session_filters = params.session_filters
        if session_filters and not session_joined:
            stmt = stmt.join(VisitorSession, VisitorSession.id == WebsiteEvent.session_id)
        for dimension, value in session_filters.items():
            conditions.append(_match(_session_column(dimension), dimension, value))
        return stmt.where(*conditions)

    async def _rows(self, stmt) -> list[dict]:
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

    # ── ingestion ─────────────────────────────────────────

    @_translate_errors
    async def get_website(self, params: WebsiteLookup) -> Website | None:
        async with self._sessions() as session:
            website = await session.get(Website, params.website_id)
        if website is None or website.is_deleted:
            return None
        return website

    @_translate_errors
    async def resolve_session(self, params: SessionResolve) -> str:
        """Insert-or-ignore keyed on the deterministic session id."""
        values = params.model_dump()
        async with self._sessions() as session:
            result = await session.execute(insert_ignore(VisitorSession, self._dialect).values(**values))
            await session.commit()
        if result.rowcount:
            logger.debug("Created session %s for website %s", params.id, params.website_id)
        return params.id

    @_translate_errors
    async def save_session_data(self, params: SessionDataWrite) -> int:
        rows = [
            SessionData(
                website_id=params.website_id,
                session_id=params.session_id,
                data_key=field.key,
                string_value=field.string_value,
                number_value=field.number_value,
                date_value=field.date_value,
                data_type=int(field.data_type),
                created_at=params.created_at,
            )
            for field in params.data
        ]
        async with self._sessions() as session:
            session.add_all(rows)
            await session.commit()
        return len(rows)

    @_translate_errors
    async def save_event(self, params: EventWrite) -> str:
        event = WebsiteEvent(
            id=params.id,
            website_id=params.website_id,
            session_id=params.session_id,
            visit_id=params.visit_id,
            url_path=params.url_path,
            url_query=params.url_query,
            referrer_path=params.referrer_path,
            referrer_query=params.referrer_query,
            referrer_domain=params.referrer_domain,
            page_title=params.page_title,
            hostname=params.hostname,
            event_type=int(params.event_type),
            event_name=params.event_name,
            tag=params.tag,
            created_at=params.created_at,
        )
        data = [
            EventData(
                website_id=params.website_id,
                website_event_id=params.id,
                data_key=field.key,
                string_value=field.string_value,
                number_value=field.number_value,
                date_value=field.date_value,
                data_type=int(field.data_type),
                created_at=params.created_at,
            )
            for field in params.data
        ]
        async with self._sessions() as session:
            session.add(event)
            # parent row must be flushed before its event_data children
            await session.flush()
            session.add_all(data)
            await session.commit()
        return params.id

    # ── summary ───────────────────────────────────────────

    @_translate_errors
    async def website_stats(self, params: QueryParams) -> QueryResult:
        per_visit = self._scope(
            select(
                WebsiteEvent.visit_id,
                WebsiteEvent.session_id,
                func.count().label("c"),
                func.min(WebsiteEvent.created_at).label("first_at"),
                func.max(WebsiteEvent.created_at).label("last_at"),
            ),
            params,
        ).group_by(WebsiteEvent.visit_id, WebsiteEvent.session_id).subquery("per_visit")

        stmt = select(
            func.coalesce(func.sum(per_visit.c.c), 0).label("pageviews"),
            func.count(distinct(per_visit.c.session_id)).label("visitors"),
            func.count().label("visits"),
            func.coalesce(func.sum(case((per_visit.c.c == 1, 1), else_=0)), 0).label("bounces"),
            func.coalesce(func.sum(seconds_between(per_visit.c.first_at, per_visit.c.last_at)), 0).label("totaltime"),
        )
        rows = await self._rows(stmt)
        return stats_result(rows[0] if rows else None)

    # ── time series ───────────────────────────────────────

    async def _series(self, params: SeriesParams, value, event_type: EventType) -> QueryResult:
        bucket = date_bucket(WebsiteEvent.created_at, params.unit)
        stmt = self._scope(select(bucket.label("x"), value.label("y")), params, event_type)
        stmt = stmt.group_by(bucket).order_by(bucket)
        return series_result(await self._rows(stmt), params)

    @_translate_errors
    async def pageview_series(self, params: SeriesParams) -> QueryResult:
        return await self._series(params, func.count(), EventType.PAGE_VIEW)

    @_translate_errors
    async def visitor_series(self, params: SeriesParams) -> QueryResult:
        return await self._series(params, func.count(distinct(WebsiteEvent.session_id)), EventType.PAGE_VIEW)

    @_translate_errors
    async def event_series(self, params: SeriesParams) -> QueryResult:
        return await self._series(params, func.count(), EventType.CUSTOM)

    # ── dimension metrics ─────────────────────────────────

    @_translate_errors
    async def page_metrics(self, params: PageMetricParams) -> QueryResult:
        column = func.coalesce(_event_column(params.dimension), EMPTY)
        event_type = EventType.CUSTOM if params.dimension == "event" else EventType.PAGE_VIEW
        count = func.count()
        stmt = self._scope(select(column.label("x"), count.label("y")), params, event_type)
        stmt = stmt.group_by(column).order_by(count.desc(), column).limit(params.limit)
        return metric_result(await self._rows(stmt), params.limit)

    @_translate_errors
    async def session_metrics(self, params: SessionMetricParams) -> QueryResult:
        column = func.coalesce(_session_column(params.dimension), EMPTY)
        count = func.count(distinct(WebsiteEvent.session_id))
        stmt = (
            select(column.label("x"), count.label("y"))
            .select_from(WebsiteEvent)
            .join(VisitorSession, VisitorSession.id == WebsiteEvent.session_id)
        )
        stmt = self._scope(stmt, params, session_joined=True)
        stmt = stmt.group_by(column).order_by(count.desc(), column).limit(params.limit)
        return metric_result(await self._rows(stmt), params.limit)

    # ── event properties ──────────────────────────────────

    def _property_scope(self, stmt, params: PropertyParams):
        stmt = stmt.select_from(EventData).join(WebsiteEvent, WebsiteEvent.id == EventData.website_event_id)
        stmt = self._scope(stmt, params, EventType.CUSTOM)
        if params.event_name:
            stmt = stmt.where(text_equals(WebsiteEvent.event_name, params.event_name))
        return stmt

    @_translate_errors
    async def event_property_fields(self, params: PropertyParams) -> QueryResult:
        count = func.count()
        stmt = self._property_scope(select(EventData.data_key.label("x"), count.label("y")), params)
        stmt = stmt.group_by(EventData.data_key).order_by(count.desc(), EventData.data_key).limit(params.limit)
        return metric_result(await self._rows(stmt), params.limit)

    @_translate_errors
    async def event_property_breakdown(self, params: PropertyBreakdownParams) -> QueryResult:
        column = func.coalesce(EventData.string_value, EMPTY)
        count = func.count()
        stmt = self._property_scope(select(column.label("x"), count.label("y")), params)
        stmt = stmt.where(text_equals(EventData.data_key, params.property_name))
        stmt = stmt.group_by(column).order_by(count.desc(), column).limit(params.limit)
        return metric_result(await self._rows(stmt), params.limit)

    # ── funnel ────────────────────────────────────────────

    @_translate_errors
    async def funnel(self, params: FunnelParams) -> QueryResult:
        """
        Every step-one event starts a chain.  Step N is the earliest matching
        event after step N-1, no later than ``window_minutes`` after that
        chain's start.  A session reaches step N when any of its chains does,
        which is what ClickHouse ``windowFunnel`` reports.
        """

        def matches(alias, step):
            if step.type == "url":
                return and_(alias.event_type == int(EventType.PAGE_VIEW), text_equals(alias.url_path, step.value))
            return and_(alias.event_type == int(EventType.CUSTOM), text_equals(alias.event_name, step.value))

        def in_scope(alias):
            conditions = [
                alias.website_id == params.website_id,
                alias.created_at >= params.start_at,
                alias.created_at < params.end_at,
            ]
            for dimension, value in params.event_filters.items():
                conditions.append(_match(getattr(alias, EVENT_DIMENSIONS[dimension]), dimension, value))
            return and_(*conditions)

        start = (
            select(
                WebsiteEvent.session_id.label("session_id"),
                WebsiteEvent.created_at.label("first_at"),
                WebsiteEvent.created_at.label("at"),
            )
            .select_from(WebsiteEvent)
            .where(in_scope(WebsiteEvent), matches(WebsiteEvent, params.steps[0]))
        )
        # later steps join on session_id, so session filters only need checking here
        if params.session_filters:
            start = start.join(VisitorSession, VisitorSession.id == WebsiteEvent.session_id).where(*[
                _match(_session_column(dimension), dimension, value)
                for dimension, value in params.session_filters.items()
            ])

        ctes = [start.cte("step1")]
        for number, step in enumerate(params.steps[1:], start=2):
            prev = ctes[-1]
            event = aliased(WebsiteEvent)
            ctes.append(
                select(
                    prev.c.session_id.label("session_id"),
                    prev.c.first_at.label("first_at"),
                    func.min(event.created_at).label("at"),
                )
                .select_from(prev)
                .join(event, event.session_id == prev.c.session_id)
                .where(
                    in_scope(event),
                    matches(event, step),
                    event.created_at > prev.c.at,
                    event.created_at <= add_minutes(prev.c.first_at, params.window_minutes),
                )
                .group_by(prev.c.session_id, prev.c.first_at)
                .cte(f"step{number}")
            )

        stmt = union_all(*[
            select(
                literal_column(str(number)).label("level"),
                func.count(distinct(cte.c.session_id)).label("visitors"),
            ).select_from(cte)
            for number, cte in enumerate(ctes, start=1)
        ])
        rows = await self._rows(stmt)
        reached = {int(row["level"]): int(row["visitors"]) for row in rows}
        return funnel_result(params.steps, reached)

    # ── realtime ──────────────────────────────────────────

    @_translate_errors
    async def active_visitors(self, params: ActiveParams) -> QueryResult:
        now = params.now or datetime.now(timezone.utc)
        stmt = select(func.count(distinct(WebsiteEvent.session_id)).label("visitors")).where(
            WebsiteEvent.website_id == params.website_id,
            WebsiteEvent.created_at >= now - timedelta(minutes=params.minutes),
            WebsiteEvent.created_at <= now,
        )
        rows = await self._rows(stmt)
        return QueryResult(rows=[{"visitors": int(rows[0]["visitors"]) if rows else 0}])

    # ── session list ──────────────────────────────────────

    @_translate_errors
    async def session_page(self, params: SessionListParams) -> QueryResult:
        """Session metadata only, newest first, keyed on (created_at, id)."""
        stmt = select(VisitorSession).where(
            VisitorSession.website_id == params.website_id,
            VisitorSession.created_at >= params.start_at,
            VisitorSession.created_at < params.end_at,
        )
        for dimension, value in params.session_filters.items():
            stmt = stmt.where(_match(_session_column(dimension), dimension, value))
        if params.cursor:
            after_at, after_id = decode_cursor(params.cursor)
            stmt = stmt.where(or_(
                VisitorSession.created_at < after_at,
                and_(VisitorSession.created_at == after_at, VisitorSession.id < after_id),
            ))
        stmt = stmt.order_by(VisitorSession.created_at.desc(), VisitorSession.id.desc()).limit(params.page_size + 1)

        async with self._sessions() as session:
            sessions = list((await session.execute(stmt)).scalars().all())

        next_cursor = None
        if len(sessions) > params.page_size:
            sessions = sessions[: params.page_size]
            last = sessions[-1]
            next_cursor = encode_cursor(last.created_at, last.id)
        return QueryResult(rows=[session_row(s.to_dict()) for s in sessions], next_cursor=next_cursor)

    @_translate_errors
    async def session_volume(self, params: SessionVolumeParams) -> QueryResult:
        if not params.session_ids:
            return QueryResult()
        stmt = (
            select(
                WebsiteEvent.session_id.label("id"),
                func.sum(case((WebsiteEvent.event_type == int(EventType.PAGE_VIEW), 1), else_=0)).label("views"),
                func.sum(case((WebsiteEvent.event_type == int(EventType.CUSTOM), 1), else_=0)).label("events"),
            )
            .where(
                WebsiteEvent.website_id == params.website_id,
                WebsiteEvent.session_id.in_(params.session_ids),
            )
            .group_by(WebsiteEvent.session_id)
        )
        return QueryResult(rows=await self._rows(stmt))

    async def session_list(self, params: SessionListParams) -> QueryResult:
        """Metadata and volume from the same store (no analytics store attached)."""
        page = await self.session_page(params)
        volume = await self.session_volume(SessionVolumeParams(
            website_id=params.website_id,
            session_ids=[row["id"] for row in page.rows],
        ))
        return QueryResult(
            rows=merge_on_key(page.rows, volume.rows, "id", VOLUME_FIELDS),
            next_cursor=page.next_cursor,
        )
