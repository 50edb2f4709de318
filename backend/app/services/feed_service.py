"""
feed_service.py

Read path and admin operations over the coordination components. One
instance per process, built around the process-wide store handle.

A cache miss never blocks the request on NRK. Depending on
settings.cache_miss_strategy it either enqueues the series for the backfill
worker ("queue") or takes the series' fetch lock and triggers a single
background fetch ("direct"). Either way the caller gets the current progress
record to show while polling.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel

from app.core.keys import EVENT_SERIES_FETCH
from app.core.store import KeyValueStore
from app.schemas import QueueStatus, Series, SeriesFetchProgress, UnblockResult
from app.services.catalog import CatalogClient
from app.services.fetch_lock import FetchLock
from app.services.progress import ProgressTracker, make_progress
from app.services.series_cache import MODE_TRIGGER, SeriesCache
from app.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)

SendEvent = Callable[[str, Dict[str, Any]], Awaitable[bool]]

STRATEGY_QUEUE = "queue"
STRATEGY_DIRECT = "direct"


class FeedLookup(BaseModel):
    series: Optional[Series] = None
    progress: Optional[SeriesFetchProgress] = None
    available: bool = True


class FeedService:
    def __init__(self, store: KeyValueStore, catalog: CatalogClient, settings, send_event: SendEvent):
        self.store = store
        self.catalog = catalog
        self.settings = settings
        self.send_event = send_event
        self.progress = ProgressTracker(store, ttl_seconds=settings.series_progress_ttl_sec)
        self.fetch_lock = FetchLock(store, ttl_seconds=settings.series_fetch_lock_ttl_sec)
        self.queue = WorkQueue(
            store,
            claim_ttl_seconds=settings.series_queue_claim_ttl_sec,
            kick_lock_ttl_seconds=settings.series_queue_kick_lock_ttl_sec,
        )
        self.cache = SeriesCache(
            store,
            catalog,
            progress=self.progress,
            fetch_lock=self.fetch_lock,
            sync_interval_hours=settings.sync_interval_hours,
            max_bytes=settings.max_series_bytes,
            update_batch_size=settings.nrk_update_batch_size,
            fetch_batch_size=settings.batch_size,
        )

    async def get_feed(self, series_id: str) -> FeedLookup:
        series = await self.cache.get_series(series_id, mode=MODE_TRIGGER)
        if series is not None:
            return FeedLookup(series=series)

        if self.settings.cache_miss_strategy == STRATEGY_DIRECT:
            await self.trigger_fetch(series_id)
            return FeedLookup(progress=await self.progress.read(series_id))

        progress = await self.handle_queue_on_cache_miss(series_id)
        return FeedLookup(progress=progress, available=progress is not None)

    async def handle_queue_on_cache_miss(self, series_id: str) -> Optional[SeriesFetchProgress]:
        """
        Enqueue the series and make sure one worker is (or will be) draining the
        queue. A running fetch keeps its progress record; anything else is
        replaced with "queued" at the current position.
        """
        result = await self.queue.enqueue(series_id)
        if result is None:
            return None

        current = await self.progress.read(series_id)
        if current is None or current.status != "running":
            current = make_progress("queued", queue_position=result.position)
            await self.progress.write(series_id, current)

        await self.queue.send_kick(self.send_event)
        return current

    async def trigger_fetch(self, series_id: str) -> bool:
        """Send one fetch event per series; the task releases the lock with the token it carries."""
        token = await self.fetch_lock.acquire(series_id)
        if token is None:
            return False
        await self.progress.write(series_id, make_progress("queued"))
        sent = await self.send_event(EVENT_SERIES_FETCH, {"series_id": series_id, "lock_token": token})
        if not sent:
            await self.fetch_lock.release(series_id, token)
        return sent

    async def queue_position(self, series_id: str) -> Optional[int]:
        return await self.queue.position(series_id)

    async def get_queue_status(self) -> Optional[QueueStatus]:
        return await self.queue.get_queue_status(self.progress)

    async def unblock_queue(self) -> UnblockResult:
        result = await self.queue.unblock_queue()
        if result.unblocked and result.queue_length > 0:
            await self.queue.send_kick(self.send_event)
        return result
