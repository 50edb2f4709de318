"""
admin_queue.py

Operator endpoints for the backfill queue: inspect the active claim, its
progress and the queued series; force-clear the claim and kick lock when the
queue is stuck. Guarded by ADMIN_SECRET (X-Admin-Secret header or ?secret=)
when it is set.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from app.api.series import get_feed_service
from app.core.config import settings
from app.services.feed_service import FeedService

router = APIRouter()
logger = logging.getLogger(__name__)


def require_admin(
    x_admin_secret: Optional[str] = Header(default=None),
    secret: Optional[str] = Query(default=None),
) -> None:
    expected = settings.admin_secret
    if not expected:
        return
    provided = x_admin_secret or secret or ""
    if not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/queue", dependencies=[Depends(require_admin)])
async def get_queue(service: FeedService = Depends(get_feed_service)):
    status = await service.get_queue_status()
    if status is None:
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return JSONResponse(content=status.model_dump(by_alias=True), headers={"Cache-Control": "no-store"})


@router.post("/queue", dependencies=[Depends(require_admin)])
async def unblock_queue(service: FeedService = Depends(get_feed_service)):
    result = await service.unblock_queue()
    if not result.unblocked:
        raise HTTPException(status_code=503, detail="Storage unavailable")
    logger.info(f"Queue unblocked by admin, {result.queue_length} queued")
    return result.model_dump(by_alias=True)
