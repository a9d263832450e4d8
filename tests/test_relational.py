"""
Tests for the relational query implementations (SQLite dialect).
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from beacon.errors import ValidationError
from beacon.models import DataType, VisitorSession
from beacon.queries.params import (
    ActiveParams,
    FunnelParams,
    PageMetricParams,
    PropertyBreakdownParams,
    PropertyParams,
    QueryParams,
    SeriesParams,
    SessionListParams,
    SessionMetricParams,
    SessionVolumeParams,
    WebsiteLookup,
)
from tests.conftest import DELETED_WEBSITE_ID, WEBSITE_ID, make_session, utc

START = utc(2024, 3, 1)
END = utc(2024, 3, 8)


def window(**extra):
    return dict(website_id=WEBSITE_ID, start_at=START, end_at=END, **extra)


@pytest.fixture()
async def traffic(seed):
    """
    Three sessions in the first week of March 2024:

    * s1 (chrome, DE) views /, /pricing, then signs up with {plan: pro, seats: 5}
    * s2 (firefox, US) views / and bounces
    * s3 (chrome, US) on day 4 views /Pricing (capitalised) from google.com
    """
    s1 = make_session(created_at=utc(2024, 3, 1, 10), browser="chrome", country="DE", hostname="example.com")
    s2 = make_session(created_at=utc(2024, 3, 1, 11), browser="firefox", country="US", hostname="example.com")
    s3 = make_session(created_at=utc(2024, 3, 4, 9), browser="chrome", country="US", hostname="example.com")

    await seed(s1, [
        (utc(2024, 3, 1, 10, 0), "/", None, None),
        (utc(2024, 3, 1, 10, 2), "/pricing", None, None),
        (utc(2024, 3, 1, 10, 5), "/pricing", "signup", [
            {"key": "plan", "data_type": DataType.STRING, "string_value": "pro"},
            {"key": "seats", "data_type": DataType.NUMBER, "string_value": "5", "number_value": 5},
        ]),
    ])
    await seed(s2, [(utc(2024, 3, 1, 11, 0), "/", None, None)])
    await seed(s3, [(utc(2024, 3, 4, 9, 0), "/Pricing", None, None)])
    return s1, s2, s3


class TestWebsiteLookup:
    async def test_found(self, relational, website):
        site = await relational.get_website(WebsiteLookup(website_id=WEBSITE_ID))
        assert site.id == WEBSITE_ID

    async def test_deleted_is_absent(self, relational, website):
        assert await relational.get_website(WebsiteLookup(website_id=DELETED_WEBSITE_ID)) is None

    async def test_unknown(self, relational, website):
        assert await relational.get_website(WebsiteLookup(website_id="nope")) is None


class TestResolveSession:
    async def test_idempotent(self, relational, session_factory, website):
        session = make_session(session_id="11111111-1111-4111-8111-111111111111")
        first = await relational.resolve_session(session)
        second = await relational.resolve_session(session.model_copy(update={"browser": "changed"}))
        assert first == second == session.id

        async with session_factory() as db:
            rows = (await db.execute(select(VisitorSession))).scalars().all()
        assert len(rows) == 1
        assert rows[0].browser is None


class TestStats:
    async def test_totals(self, relational, traffic):
        result = await relational.website_stats(QueryParams(**window()))
        row = result.rows[0]
        assert row["pageviews"] == 4
        assert row["visitors"] == 3
        assert row["visits"] == 3
        assert row["bounces"] == 2
        assert row["totaltime"] == 120
        assert result.approximate is False

    async def test_empty_range(self, relational, website):
        result = await relational.website_stats(QueryParams(**window()))
        assert result.rows == [{"pageviews": 0, "visitors": 0, "visits": 0, "bounces": 0, "totaltime": 0}]

    async def test_session_filter(self, relational, traffic):
        result = await relational.website_stats(QueryParams(**window(filters={"browser": "firefox"})))
        assert result.rows[0]["pageviews"] == 1

    async def test_totaltime_counts_whole_second_boundaries(self, relational, seed):
        await seed(make_session(created_at=utc(2024, 3, 2, 10)), [
            (utc(2024, 3, 2, 10, 0, 0, 900000), "/", None, None),
            (utc(2024, 3, 2, 10, 0, 2, 100000), "/docs", None, None),
        ])
        result = await relational.website_stats(QueryParams(**window()))
        assert result.rows[0]["totaltime"] == 2


class TestSeries:
    async def test_seven_day_report_has_seven_buckets(self, relational, traffic):
        result = await relational.pageview_series(SeriesParams(**window(unit="day")))
        assert len(result.rows) == 7
        assert result.rows[0] == {"x": "2024-03-01T00:00:00Z", "y": 3}
        assert result.rows[1] == {"x": "2024-03-02T00:00:00Z", "y": 0}
        assert result.rows[3] == {"x": "2024-03-04T00:00:00Z", "y": 1}
        assert result.rows[4]["y"] == 0

    async def test_visitors_distinct(self, relational, traffic):
        result = await relational.visitor_series(SeriesParams(**window(unit="day")))
        assert result.rows[0]["y"] == 2

    async def test_hourly(self, relational, traffic):
        params = SeriesParams(website_id=WEBSITE_ID, start_at=utc(2024, 3, 1, 9), end_at=utc(2024, 3, 1, 12), unit="hour")
        result = await relational.pageview_series(params)
        assert [r["y"] for r in result.rows] == [0, 2, 1]

    async def test_event_series(self, relational, traffic):
        result = await relational.event_series(SeriesParams(**window(unit="day")))
        assert result.rows[0]["y"] == 1
        assert sum(r["y"] for r in result.rows) == 1


class TestMetrics:
    async def test_urls_are_case_sensitive(self, relational, traffic):
        result = await relational.page_metrics(PageMetricParams(**window(dimension="url")))
        assert result.rows == [{"x": "/", "y": 2}, {"x": "/Pricing", "y": 1}, {"x": "/pricing", "y": 1}]

    async def test_url_filter_exact(self, relational, traffic):
        result = await relational.page_metrics(PageMetricParams(**window(dimension="url", filters={"url": "/pricing"})))
        assert result.rows == [{"x": "/pricing", "y": 1}]

    async def test_host_filter_case_insensitive(self, relational, traffic):
        result = await relational.page_metrics(PageMetricParams(**window(dimension="url", filters={"host": "EXAMPLE.com"})))
        assert sum(r["y"] for r in result.rows) == 4

    async def test_event_dimension_counts_custom_events(self, relational, traffic):
        result = await relational.page_metrics(PageMetricParams(**window(dimension="event")))
        assert result.rows == [{"x": "signup", "y": 1}]

    async def test_limit(self, relational, traffic):
        result = await relational.page_metrics(PageMetricParams(**window(dimension="url", limit=1)))
        assert result.rows == [{"x": "/", "y": 2}]

    async def test_session_dimension(self, relational, traffic):
        result = await relational.session_metrics(SessionMetricParams(**window(dimension="browser")))
        assert result.rows == [{"x": "chrome", "y": 2}, {"x": "firefox", "y": 1}]

    async def test_session_dimension_with_filter(self, relational, traffic):
        params = SessionMetricParams(**window(dimension="browser", filters={"country": "US"}))
        result = await relational.session_metrics(params)
        assert result.rows == [{"x": "chrome", "y": 1}, {"x": "firefox", "y": 1}]

    def test_unknown_dimension_rejected(self):
        with pytest.raises(ValueError):
            PageMetricParams(**window(dimension="browser"))


class TestEventProperties:
    async def test_fields(self, relational, traffic):
        result = await relational.event_property_fields(PropertyParams(**window(event_name="signup")))
        assert result.rows == [{"x": "plan", "y": 1}, {"x": "seats", "y": 1}]

    async def test_breakdown(self, relational, traffic):
        result = await relational.event_property_breakdown(
            PropertyBreakdownParams(**window(event_name="signup", property_name="plan"))
        )
        assert result.rows == [{"x": "pro", "y": 1}]

    async def test_number_grouped_on_canonical_text(self, relational, traffic):
        result = await relational.event_property_breakdown(PropertyBreakdownParams(**window(property_name="seats")))
        assert result.rows == [{"x": "5", "y": 1}]

    async def test_other_event_has_no_properties(self, relational, traffic):
        result = await relational.event_property_fields(PropertyParams(**window(event_name="purchase")))
        assert result.rows == []

    def test_breakdown_requires_property_name(self):
        with pytest.raises(ValueError):
            PropertyBreakdownParams(**window(event_name="signup"))

    def test_session_filters_not_allowed(self):

        with pytest.raises(ValueError):
            PropertyParams(**window(filters={"browser": "chrome"}))


class TestFunnel:
    async def test_step_counts(self, relational, traffic):
        params = FunnelParams(**window(
            steps=[
                {"type": "url", "value": "/"},
                {"type": "url", "value": "/pricing"},
                {"type": "event", "value": "signup"},
            ],
            window_minutes=60,
        ))
        result = await relational.funnel(params)
        assert [r["y"] for r in result.rows] == [2, 1, 1]
        assert result.rows[0]["dropoff"] is None
        assert result.rows[1]["dropped"] == 1
        assert result.rows[1]["dropoff"] == 0.5
        assert result.rows[2]["remaining"] == 0.5

    async def test_window_excludes_late_steps(self, relational, traffic):
        params = FunnelParams(**window(
            steps=[{"type": "url", "value": "/"}, {"type": "event", "value": "signup"}],
            window_minutes=2,
        ))
        result = await relational.funnel(params)
        assert [r["y"] for r in result.rows] == [2, 0]

    async def test_order_matters(self, relational, traffic):
        params = FunnelParams(**window(
            steps=[{"type": "url", "value": "/pricing"}, {"type": "url", "value": "/"}],
        ))
        result = await relational.funnel(params)
        assert [r["y"] for r in result.rows] == [1, 0]

    async def test_session_filter_applies(self, relational, traffic):
        params = FunnelParams(**window(
            steps=[{"type": "url", "value": "/"}, {"type": "url", "value": "/pricing"}],
            filters={"browser": "firefox"},
        ))
        result = await relational.funnel(params)
        assert [r["y"] for r in result.rows] == [1, 0]

    async def test_event_filter_applies_to_every_step(self, relational, traffic):
        params = FunnelParams(**window(
            steps=[{"type": "url", "value": "/"}, {"type": "url", "value": "/pricing"}],
            filters={"host": "other.example.com"},
        ))
        result = await relational.funnel(params)
        assert [r["y"] for r in result.rows] == [0, 0]

    async def test_later_start_can_complete(self, relational, seed):
        session = make_session(created_at=utc(2024, 3, 2, 10))
        await seed(session, [
            (utc(2024, 3, 2, 10, 0), "/", None, None),
            (utc(2024, 3, 2, 12, 0), "/pricing", None, None),
            (utc(2024, 3, 2, 13, 0), "/", None, None),
            (utc(2024, 3, 2, 13, 10), "/pricing", None, None),
        ])
        params = FunnelParams(**window(
            steps=[{"type": "url", "value": "/"}, {"type": "url", "value": "/pricing"}],
            window_minutes=60,
        ))
        result = await relational.funnel(params)
        assert [r["y"] for r in result.rows] == [1, 1]


class TestActive:
    async def test_recent_sessions(self, relational, traffic):
        s1, _, _ = traffic
        params = ActiveParams(website_id=WEBSITE_ID, minutes=5, now=utc(2024, 3, 1, 10, 6))
        result = await relational.active_visitors(params)
        assert result.rows == [{"visitors": 1}]


class TestSessionList:
    async def test_newest_first_with_volume(self, relational, traffic):
        s1, s2, s3 = traffic
        result = await relational.session_list(SessionListParams(**window()))
        assert [r["id"] for r in result.rows] == [s3.id, s2.id, s1.id]
        by_id = {r["id"]: r for r in result.rows}
        assert (by_id[s1.id]["views"], by_id[s1.id]["events"]) == (2, 1)
        assert (by_id[s2.id]["views"], by_id[s2.id]["events"]) == (1, 0)
        assert result.next_cursor is None

    async def test_session_filter(self, relational, traffic):
        result = await relational.session_list(SessionListParams(**window(filters={"country": "DE"})))
        assert len(result.rows) == 1

    async def test_event_filters_rejected(self):
        with pytest.raises(ValueError):
            SessionListParams(**window(filters={"url": "/"}))

    async def test_volume_for_unknown_ids(self, relational, traffic):
        result = await relational.session_volume(SessionVolumeParams(website_id=WEBSITE_ID, session_ids=["missing"]))
        assert result.rows == []

    async def test_paging_is_stable_under_inserts(self, relational, seed):
        base = utc(2024, 3, 2, 12)
        for i in range(7):
            await seed(make_session(created_at=base + timedelta(minutes=i)), [])

        seen: list[str] = []
        page = await relational.session_list(SessionListParams(**window(page_size=3)))
        seen += [r["id"] for r in page.rows]
        assert page.next_cursor

        # newer and older sessions arrive between page requests
        await seed(make_session(created_at=base + timedelta(minutes=30)), [])
        await seed(make_session(created_at=base - timedelta(minutes=30)), [])

        cursor = page.next_cursor
        while cursor:
            page = await relational.session_list(SessionListParams(**window(page_size=3, cursor=cursor)))
            seen += [r["id"] for r in page.rows]
            cursor = page.next_cursor

        assert len(seen) == len(set(seen))
        # the seven original sessions plus the older late arrival
        assert len(seen) == 8

    async def test_ties_broken_by_id(self, relational, seed):
        same = utc(2024, 3, 3, 8)
        ids = sorted(str(i) * 8 + "-0000-4000-8000-000000000000" for i in range(1, 6))
        for session_id in ids:
            await seed(make_session(session_id=session_id, created_at=same), [])

        first = await relational.session_list(SessionListParams(**window(page_size=2)))
        second = await relational.session_list(SessionListParams(**window(page_size=2, cursor=first.next_cursor)))
        third = await relational.session_list(SessionListParams(**window(page_size=2, cursor=second.next_cursor)))
        returned = [r["id"] for page in (first, second, third) for r in page.rows]
        assert returned == list(reversed(ids))
        assert third.next_cursor is None

    async def test_bad_cursor(self, relational, website):
        with pytest.raises(ValidationError):
            await relational.session_list(SessionListParams(**window(cursor="%%%not-base64")))


class TestEmptyStore:
    async def test_series_all_zero(self, relational, website):
        result = await relational.pageview_series(SeriesParams(**window(unit="day")))
        assert [r["y"] for r in result.rows] == [0] * 7

    async def test_count_sessions(self, session_factory, website):
        async with session_factory() as db:
            assert (await db.execute(select(func.count()).select_from(VisitorSession))).scalar() == 0
