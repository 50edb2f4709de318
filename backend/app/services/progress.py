"""
progress.py

Per-series fetch progress for polling clients. A record is written when a
fetch is queued or starts, updated after every batch, deleted on success and
left in place with status "failed" on terminal failure. Absence therefore
means "resolved". Every write carries a TTL so orphaned records expire.
"""
import logging
from typing import Optional

from pydantic import ValidationError

from app.core.keys import series_progress_key
from app.core.store import KeyValueStore, StoreError
from app.schemas import SeriesFetchProgress
from app.utils.timezone import now_iso

logger = logging.getLogger(__name__)


def make_progress(status: str, **fields) -> SeriesFetchProgress:
    return SeriesFetchProgress(status=status, updated_at=now_iso(), **fields)


class ProgressTracker:
    def __init__(self, store: KeyValueStore, ttl_seconds: int = 3600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def write(self, series_id: str, progress: SeriesFetchProgress) -> bool:
        try:
            await self.store.set(series_progress_key(series_id), progress.to_json(), ex=self.ttl_seconds)
            return True
        except StoreError as e:
            logger.warning(f"Failed to write progress for {series_id}: {e}")
            return False

    async def read(self, series_id: str) -> Optional[SeriesFetchProgress]:
        try:
            raw = await self.store.get(series_progress_key(series_id))
        except StoreError as e:
            logger.warning(f"Failed to read progress for {series_id}: {e}")
            return None
        if not raw:
            return None
        try:
            return SeriesFetchProgress.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"Discarding malformed progress record for {series_id}")
            return None

    async def clear(self, series_id: str) -> bool:
        try:
            await self.store.delete(series_progress_key(series_id))
            return True
        except StoreError as e:
            logger.warning(f"Failed to clear progress for {series_id}: {e}")
            return False
