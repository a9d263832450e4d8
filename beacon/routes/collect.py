"""
Collect endpoint — the tracker's single write path.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from beacon.errors import StoreError
from beacon.routes.deps import get_collect_service
from beacon.schemas import CollectResponse
from beacon.services.ingest import CollectService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["collect"])


@router.post("/send", response_model=CollectResponse)
async def send(request: Request, service: CollectService = Depends(get_collect_service)):
    """
    Accept one page view, custom event or identify call.

    Validation problems are 400 (the tracker should not retry).  Any store
    failure is 503 so a queue or client can retry later.
    """
    body = await request.body()
    peer = request.client.host if request.client else None
    try:
        return await service.collect(body, request.headers, peer)
    except StoreError as e:
        return JSONResponse(status_code=503, content=e.to_dict())
