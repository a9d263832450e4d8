"""
Request dependencies — everything built in the lifespan lives on app.state.
"""

from fastapi import Request

from beacon.queries.router import QueryRouter
from beacon.services.ingest import CollectService
from beacon.services.reports import ReportService


def get_router(request: Request) -> QueryRouter:
    return request.app.state.query_router


def get_collect_service(request: Request) -> CollectService:
    return request.app.state.collect_service


def get_report_service(request: Request) -> ReportService:
    return request.app.state.report_service
