"""
FastAPI Application — entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon.config import Settings, settings
from beacon.database import build_engine, build_session_factory, close_db, init_db
from beacon.detector import EngineIdentity, detect_engine
from beacon.errors import (
    AnalyticsError,
    ConfigurationError,
    PartialCapabilityError,
    QueryFailedError,
    StoreUnavailableError,
    ValidationError,
    validation_details,
)
from beacon.queries.clickhouse import ClickHouseClient, ensure_schema
from beacon.queries.columnar import ColumnarQueries
from beacon.queries.relational import RelationalQueries
from beacon.queries.router import QueryRouter
from beacon.routes import router
from beacon.services.ingest import CollectService
from beacon.services.reports import ReportService

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def wire_state(
    app: FastAPI,
    identity: EngineIdentity,
    session_factory: async_sessionmaker[AsyncSession],
    dialect_name: str,
    clickhouse: ClickHouseClient | None = None,
    config: Settings = settings,
) -> QueryRouter:
    """Build router and services once and hang them on ``app.state``."""
    relational = RelationalQueries(session_factory, dialect_name)
    columnar = ColumnarQueries(clickhouse, config.approx_distinct_threshold) if clickhouse else None
    query_router = QueryRouter(identity, relational, columnar)

    app.state.identity = identity
    app.state.clickhouse = clickhouse
    app.state.query_router = query_router
    app.state.collect_service = CollectService(query_router, config)
    app.state.report_service = ReportService(query_router, config.report_timeout_secs)
    return query_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook."""
    logger.info("🚀 Starting Beacon Analytics API v%s", VERSION)
    identity = detect_engine(settings.database_url, settings.clickhouse_url)

    engine = build_engine(identity)
    await init_db(engine)
    logger.info("✅ Relational store ready (%s)", identity.relational.value)

    clickhouse = None
    if identity.clickhouse:
        clickhouse = ClickHouseClient(identity.clickhouse, timeout=settings.clickhouse_timeout)
        if settings.clickhouse_create_schema:
            await ensure_schema(clickhouse)
        logger.info("✅ Analytics store attached (%s)", identity.clickhouse.base_url)
    else:
        logger.info("ℹ️ No analytics store, relational answers every operation")

    wire_state(app, identity, build_session_factory(engine), engine.dialect.name, clickhouse)

    yield

    # Shutdown
    if clickhouse:
        await clickhouse.close()
    await close_db(engine)
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="Beacon Analytics API",
    description="Privacy-friendly web analytics: event collection and multi-engine reporting.",
    version=VERSION,
    lifespan=lifespan,
)

# CORS: the tracker posts from any customer origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


# ── Error mapping ───────────────────────────────────────

_STATUS = [
    (ValidationError, 400),
    (PartialCapabilityError, 503),
    (StoreUnavailableError, 503),
    (QueryFailedError, 500),
    (ConfigurationError, 500),
]


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
    if status == 400:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc)
    else:
        logger.error("❌ %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
@app.exception_handler(PydanticValidationError)
async def pydantic_error_handler(request: Request, exc: PydanticValidationError | RequestValidationError):
    error = ValidationError("Invalid parameters", detail=validation_details(exc))
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, error)
    return JSONResponse(status_code=400, content=error.to_dict())


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Beacon Analytics API",
        "version": VERSION,
        "docs": "/docs",
    }
