import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from app.api import admin_queue, series
from app.core.config import settings
from app.core.store import StoreError, create_store
from app.services.events import send_event
from app.services.feed_service import FeedService
from app.services.nrk_client import NrkClient
from app.utils.logger import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="NRSS API", version="1.0.0")

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(series.router, prefix="/api/series", tags=["Series"])
app.include_router(admin_queue.router, prefix="/api/admin", tags=["Admin"])


@app.on_event("startup")
async def startup_event():
    store = create_store(settings)
    await store.connect()
    app.state.store = store
    app.state.feed_service = FeedService(store, NrkClient(), settings, send_event)
    logger.info(f"Store connected ({settings.store_backend}), cache miss strategy: {settings.cache_miss_strategy}")


@app.on_event("shutdown")
async def shutdown_event():
    store = getattr(app.state, "store", None)
    if store is not None:
        await store.disconnect()


@app.get("/")
def root():
    return {"message": "NRSS backend is running."}


@app.get("/health")
async def health():
    try:
        ok = await app.state.store.ping()
    except StoreError as e:
        logger.warning(f"Health check failed: {e}")
        ok = False
    if not ok:
        raise HTTPException(status_code=503, detail="Store unavailable")
    return {"status": "ok"}
