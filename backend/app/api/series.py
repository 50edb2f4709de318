"""
series.py

Public read path: the cached series snapshot, or a pending response with the
fetch progress while the series is queued or being fetched.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.services.feed_service import FeedService

router = APIRouter()
logger = logging.getLogger(__name__)

CACHE_READY = "public, max-age=7200"
CACHE_PENDING = "no-store, max-age=0, must-revalidate"


def get_feed_service(request: Request) -> FeedService:
    return request.app.state.feed_service


@router.get("/{series_id}")
async def get_series(series_id: str, service: FeedService = Depends(get_feed_service)):
    lookup = await service.get_feed(series_id)
    if lookup.series is not None:
        return JSONResponse(
            content=lookup.series.model_dump(by_alias=True),
            headers={"Cache-Control": CACHE_READY},
        )
    if not lookup.available:
        raise HTTPException(status_code=503, detail="Storage unavailable")

    position = await service.queue_position(series_id)
    body = {
        "seriesId": series_id,
        "status": lookup.progress.status if lookup.progress else "queued",
        "queuePosition": position,
        "progress": lookup.progress.model_dump(by_alias=True) if lookup.progress else None,
    }
    return JSONResponse(status_code=202, content=body, headers={"Cache-Control": CACHE_PENDING})


@router.get("/{series_id}/progress")
async def get_series_progress(series_id: str, service: FeedService = Depends(get_feed_service)):
    progress = await service.progress.read(series_id)
    if progress is None:
        return JSONResponse(content={"status": "resolved"}, headers={"Cache-Control": CACHE_PENDING})
    body = progress.model_dump(by_alias=True)
    if progress.status == "queued":
        position = await service.queue_position(series_id)
        if position is not None:
            body["queuePosition"] = position
    return JSONResponse(content=body, headers={"Cache-Control": CACHE_PENDING})
