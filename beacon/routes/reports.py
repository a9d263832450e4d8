"""
Report routes — dashboards read everything through these.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from beacon.queries.operations import Operation
from beacon.queries.params import (
    EVENT_DIMENSIONS,
    SESSION_DIMENSIONS,
    ActiveParams,
    FunnelParams,
    PageMetricParams,
    PropertyBreakdownParams,
    PropertyParams,
    QueryParams,
    SessionListParams,
    SessionMetricParams,
    WebsiteLookup,
)
from beacon.queries.router import QueryRouter
from beacon.routes.deps import get_report_service, get_router
from beacon.schemas.reports import (
    FunnelRequest,
    OverviewResponse,
    QueryResultResponse,
    ReportDefinition,
    ReportResponse,
)
from beacon.services.reports import ReportService, build_params
from beacon.timeseries import Unit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["reports"])

_DIMENSIONS = set(EVENT_DIMENSIONS) | set(SESSION_DIMENSIONS)


def _filters(request: Request) -> dict[str, str]:
    """Dimension filters passed as plain query parameters (``?browser=firefox``)."""
    return {k: v for k, v in request.query_params.items() if k in _DIMENSIONS}


async def _require_website(query_router: QueryRouter, website_id: str) -> None:
    website = await query_router.execute(Operation.GET_WEBSITE, WebsiteLookup(website_id=website_id))
    if website is None:
        raise HTTPException(404, f"Website {website_id} not found")


def _response(result) -> QueryResultResponse:
    return QueryResultResponse(**result.to_dict())


# ── Reports ─────────────────────────────────────────────

@router.post("/reports", response_model=ReportResponse)
async def run_report(
    definition: ReportDefinition,
    query_router: QueryRouter = Depends(get_router),
    service: ReportService = Depends(get_report_service),
):
    await _require_website(query_router, definition.website_id)
    return await service.run(definition)


@router.get("/websites/{website_id}/overview", response_model=OverviewResponse)
async def overview(
    website_id: str,
    request: Request,
    start_at: datetime,
    end_at: datetime,
    unit: Unit = Unit.DAY,
    query_router: QueryRouter = Depends(get_router),
    service: ReportService = Depends(get_report_service),
):
    await _require_website(query_router, website_id)
    return await service.overview(website_id, start_at, end_at, unit, _filters(request))


# ── Single operations ───────────────────────────────────

@router.get("/websites/{website_id}/stats", response_model=QueryResultResponse)
async def stats(
    website_id: str,
    request: Request,
    start_at: datetime,
    end_at: datetime,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    params = build_params(
        QueryParams, website_id=website_id, start_at=start_at, end_at=end_at, filters=_filters(request)
    )
    return _response(await query_router.execute(Operation.WEBSITE_STATS, params))


@router.get("/websites/{website_id}/metrics", response_model=QueryResultResponse)
async def metrics(
    website_id: str,
    request: Request,
    start_at: datetime,
    end_at: datetime,
    type: str = Query(..., description="Dimension to group by, e.g. url, referrer, browser"),
    limit: int = 100,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    base = dict(website_id=website_id, start_at=start_at, end_at=end_at, filters=_filters(request), limit=limit)
    if type in SESSION_DIMENSIONS:
        params = build_params(SessionMetricParams, dimension=type, **base)
        return _response(await query_router.execute(Operation.SESSION_METRICS, params))
    params = build_params(PageMetricParams, dimension=type, **base)
    return _response(await query_router.execute(Operation.PAGE_METRICS, params))


@router.get("/websites/{website_id}/sessions", response_model=QueryResultResponse)
async def sessions(
    website_id: str,
    request: Request,
    start_at: datetime,
    end_at: datetime,
    page_size: int = 20,
    cursor: str | None = None,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    params = build_params(
        SessionListParams,
        website_id=website_id,
        start_at=start_at,
        end_at=end_at,
        filters=_filters(request),
        page_size=page_size,
        cursor=cursor,
    )
    return _response(await query_router.execute(Operation.SESSION_LIST, params))


@router.get("/websites/{website_id}/active", response_model=QueryResultResponse)
async def active(
    website_id: str,
    minutes: int = 5,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    params = build_params(ActiveParams, website_id=website_id, minutes=minutes)
    return _response(await query_router.execute(Operation.ACTIVE_VISITORS, params))


@router.get("/websites/{website_id}/event-data/fields", response_model=QueryResultResponse)
async def event_data_fields(
    website_id: str,
    request: Request,
    start_at: datetime,
    end_at: datetime,
    event_name: str | None = None,
    limit: int = 100,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    params = build_params(
        PropertyParams,
        website_id=website_id,
        start_at=start_at,
        end_at=end_at,
        filters=_filters(request),
        event_name=event_name,
        limit=limit,
    )
    return _response(await query_router.execute(Operation.EVENT_PROPERTY_FIELDS, params))


@router.get("/websites/{website_id}/event-data/values", response_model=QueryResultResponse)
async def event_data_values(
    website_id: str,
    request: Request,
    start_at: datetime,
    end_at: datetime,
    property_name: str,
    event_name: str | None = None,
    limit: int = 100,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    params = build_params(
        PropertyBreakdownParams,
        website_id=website_id,
        start_at=start_at,
        end_at=end_at,
        filters=_filters(request),
        event_name=event_name,
        property_name=property_name,
        limit=limit,
    )
    return _response(await query_router.execute(Operation.EVENT_PROPERTY_BREAKDOWN, params))


@router.post("/websites/{website_id}/funnel", response_model=QueryResultResponse)
async def funnel(
    website_id: str,
    req: FunnelRequest,
    query_router: QueryRouter = Depends(get_router),
):
    await _require_website(query_router, website_id)
    params = build_params(FunnelParams, website_id=website_id, **req.model_dump())
    return _response(await query_router.execute(Operation.FUNNEL, params))
