"""
fetch_lock.py

Per-series lock for the on-demand refresh path. Holds a random token with a
TTL so a crashed holder blocks refresh for at most the TTL. Release is a
single compare-and-delete: a holder whose lock expired and was taken over
cannot delete the new holder's lock.
"""
import logging
import secrets
from typing import Optional

from app.core.keys import series_lock_key
from app.core.store import KeyValueStore, StoreError

logger = logging.getLogger(__name__)


class FetchLockBusy(Exception):
    """Raised when the fetch lock for a series is held by someone else."""
    pass


class FetchLock:
    def __init__(self, store: KeyValueStore, ttl_seconds: int = 1800):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def acquire(self, series_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """Return a token if acquired, None if another holder is active or the store is unavailable."""
        token = secrets.token_hex(16)
        try:
            acquired = await self.store.set_nx(
                series_lock_key(series_id), token, ex=ttl_seconds or self.ttl_seconds
            )
        except StoreError as e:
            logger.warning(f"Fetch lock acquire failed for {series_id}: {e}")
            return None
        if not acquired:
            logger.info(f"Fetch lock already held: {series_id}")
            return None
        return token

    async def release(self, series_id: str, token: str) -> bool:
        try:
            released = await self.store.delete_if_equals(series_lock_key(series_id), token)
        except StoreError as e:
            logger.warning(f"Fetch lock release failed for {series_id}: {e}")
            return False
        if not released:
            logger.info(f"Fetch lock for {series_id} no longer held by this token; nothing released")
        return released

    def hold(self, series_id: str, ttl_seconds: Optional[int] = None) -> "HeldFetchLock":
        return HeldFetchLock(self, series_id, ttl_seconds)


class HeldFetchLock:
    """async with fetch_lock.hold(series_id): ... raises FetchLockBusy when not acquired."""

    def __init__(self, lock: FetchLock, series_id: str, ttl_seconds: Optional[int] = None):
        self.lock = lock
        self.series_id = series_id
        self.ttl_seconds = ttl_seconds
        self.token: Optional[str] = None

    async def __aenter__(self):
        self.token = await self.lock.acquire(self.series_id, self.ttl_seconds)
        if self.token is None:
            raise FetchLockBusy(f"Could not acquire fetch lock: {self.series_id}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            await self.lock.release(self.series_id, self.token)
