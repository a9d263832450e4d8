"""
API Routes — health, plus the collect and report routers.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from beacon.routes.deps import get_router
from beacon.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Health ──────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(request: Request):
    identity = get_router(request).identity
    columnar = None
    clickhouse = getattr(request.app.state, "clickhouse", None)
    if clickhouse is not None:
        columnar = "connected" if await clickhouse.ping() else "unreachable"
    return HealthResponse(
        status="ok" if columnar != "unreachable" else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        relational=identity.relational.value,
        columnar=columnar,
    )


from beacon.routes.collect import router as collect_router  # noqa: E402
from beacon.routes.reports import router as reports_router  # noqa: E402

router.include_router(collect_router)
router.include_router(reports_router)
