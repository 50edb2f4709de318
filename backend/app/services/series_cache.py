"""
series_cache.py

Persisted series snapshots and the staleness policy around them.

- Miss: "fetch" mode runs a full fetch through the orchestrator, gated by the
  per-series fetch lock so concurrent misses cost one upstream fetch;
  "trigger" mode returns None and leaves scheduling to the caller.
- Fresh hit: returned as stored.
- Stale hit: incremental refresh. Only episodes the snapshot does not know are
  fetched and resolved, merged in front, sorted newest first, trimmed to the
  byte budget and written through. Nothing new means no write.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import ValidationError

from app.core.keys import series_key
from app.core.store import KeyValueStore, StoreError
from app.schemas import ResolvedEpisode, Series
from app.services.catalog import MAX_SERIES_BYTES, CatalogClient, sort_episodes, to_episode, trim_series_to_size
from app.services.fetch_lock import FetchLock, FetchLockBusy
from app.services.orchestrator import run_series_fetch
from app.services.progress import ProgressTracker
from app.services.steps import InlineSteps
from app.utils.timezone import now_iso, parse_iso_utc, utc_now

logger = logging.getLogger(__name__)

SYNC_INTERVAL_HOURS = 1
UPDATE_BATCH_SIZE = 20

MODE_FETCH = "fetch"
MODE_TRIGGER = "trigger"


def is_stale(last_fetched_at: Optional[str], now: Optional[datetime] = None, interval_hours: float = SYNC_INTERVAL_HOURS) -> bool:
    fetched = parse_iso_utc(last_fetched_at)
    if fetched is None:
        return True
    return (now or utc_now()) - fetched > timedelta(hours=interval_hours)


class SeriesCache:
    def __init__(
        self,
        store: KeyValueStore,
        catalog: CatalogClient,
        progress: Optional[ProgressTracker] = None,
        fetch_lock: Optional[FetchLock] = None,
        sync_interval_hours: float = SYNC_INTERVAL_HOURS,
        max_bytes: int = MAX_SERIES_BYTES,
        update_batch_size: int = UPDATE_BATCH_SIZE,
        fetch_batch_size: int = 10,
    ):
        self.store = store
        self.catalog = catalog
        self.progress = progress or ProgressTracker(store)
        self.fetch_lock = fetch_lock
        self.sync_interval_hours = sync_interval_hours
        self.max_bytes = max_bytes
        self.update_batch_size = update_batch_size
        self.fetch_batch_size = fetch_batch_size

    async def read_series(self, series_id: str) -> Optional[Series]:
        try:
            raw = await self.store.get(series_key(series_id))
        except StoreError as e:
            logger.warning(f"[storage] Read failed: {series_id}: {e}")
            return None
        if raw is None:
            return None
        try:
            return Series.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"[storage] Discarding malformed snapshot: {series_id}")
            return None

    async def write_series(self, series: Series) -> bool:
        try:
            await self.store.set(series_key(series.id), series.to_json())
        except StoreError as e:
            logger.error(f"[storage] Write failed: {series.id}: {e}")
            return False
        logger.info(f"[storage] Wrote series: {series.id} ({len(series.episodes)} episodes)")
        return True

    def is_stale(self, series: Series, now: Optional[datetime] = None) -> bool:
        return is_stale(series.last_fetched_at, now=now, interval_hours=self.sync_interval_hours)

    async def get_series(self, series_id: str, mode: str = MODE_FETCH) -> Optional[Series]:
        stored = await self.read_series(series_id)
        if stored is None:
            if mode == MODE_TRIGGER:
                logger.info(f"[feed] Miss, fetch to be triggered: {series_id}")
                return None
            return await self.initial_fetch(series_id)
        if not self.is_stale(stored):
            logger.info(f"[feed] Hit: {series_id}")
            return stored
        logger.info(f"[feed] Stale, re-fetching: {series_id}")
        return await self.update_fetch(stored)

    async def initial_fetch(self, series_id: str) -> Optional[Series]:
        """Full fetch in the caller's process.

        Under the fetch lock the snapshot is read again first, so a caller that
        missed just before another fetch stored it returns that snapshot. A
        caller that loses the lock gets whatever is stored by then, else None.
        """
        logger.info(f"[feed] Miss, fetching from NRK: {series_id}")
        if self.fetch_lock is None:
            return await self._fetch_and_store(series_id)
        try:
            async with self.fetch_lock.hold(series_id):
                stored = await self.read_series(series_id)
                if stored is not None:
                    logger.info(f"[feed] Stored by an earlier fetch: {series_id}")
                    return stored
                return await self._fetch_and_store(series_id)
        except FetchLockBusy:
            logger.info(f"[feed] Fetch already in flight: {series_id}")
            return await self.read_series(series_id)

    async def _fetch_and_store(self, series_id: str) -> Optional[Series]:
        result = await run_series_fetch(
            series_id,
            catalog=self.catalog,
            cache=self,
            progress=self.progress,
            steps=InlineSteps(),
            batch_size=self.fetch_batch_size,
            batch_delay_seconds=0,
        )
        if not result.stored:
            logger.warning(f"[feed] NRK returned no data for: {series_id} ({result.reason})")
            return None
        return result.series

    async def _resolve_in_batches(self, resources, series_type: str) -> List[ResolvedEpisode]:
        resolved: List[ResolvedEpisode] = []
        size = self.update_batch_size if self.update_batch_size > 0 else UPDATE_BATCH_SIZE
        for start in range(0, len(resources), size):
            batch = resources[start:start + size]
            resolved.extend(await self.catalog.resolve_playback_batch(batch, series_type))
        return resolved

    async def update_fetch(self, existing: Series) -> Series:
        known_ids = {ep.id for ep in existing.episodes}
        updates = await self.catalog.fetch_catalog_updates(existing.id, known_ids)
        if updates is None:
            logger.warning(f"[feed] Update fetch returned nothing, serving stale: {existing.id}")
            return existing

        fresh = [r for r in updates.episode_resources if r.episode_id not in known_ids]
        resolved = await self._resolve_in_batches(fresh, updates.type)
        new_episodes = [to_episode(r) for r in resolved]
        if not new_episodes:
            logger.info(f"[feed] No new episodes: {existing.id}")
            return existing

        updated = existing.model_copy(update={
            "last_fetched_at": now_iso(),
            "episodes": sort_episodes(new_episodes + list(existing.episodes)),
        })
        trimmed = trim_series_to_size(updated, self.max_bytes)
        if not await self.write_series(trimmed):
            logger.warning(f"[feed] Failed to persist after update: {existing.id}")
        logger.info(f"[feed] Added {len(new_episodes)} episodes: {existing.id}")
        return trimmed
