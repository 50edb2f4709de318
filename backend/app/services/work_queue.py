"""
work_queue.py

Backfill work queue: a de-duplicating FIFO (sorted set scored by enqueue time
in epoch milliseconds, ties broken by member) plus a single active-claim slot.

Only one series is processed from the queue at any instant. claim_next()
refuses while a claim exists; a claim is created with set-if-absent and the
queue member is removed right after. If that removal finds nothing (another
claimer won the race) the claim is rolled back immediately, so a claim never
points at an item that is still queued.

The active claim carries a TTL. When a worker dies, the slot frees itself on
expiry but the item is not requeued unless the worker's failure path asked
for it before dying.

The queue-kick lock collapses concurrent "process more" signals into one. Its
value is a token that travels in the kick event, so the invocation it starts
releases only the lock it was signalled under.
"""
import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from app.core.keys import EVENT_SERIES_QUEUE_KICK, SERIES_QUEUE, SERIES_QUEUE_ACTIVE, SERIES_QUEUE_KICK
from app.core.store import KeyValueStore, StoreError
from app.schemas import (
    ActiveClaim,
    ActiveClaimView,
    EnqueueResult,
    QueueClaim,
    QueuedItem,
    QueueStatus,
    UnblockResult,
)
from app.services.progress import ProgressTracker
from app.utils.timezone import now_iso

logger = logging.getLogger(__name__)


def _epoch_ms() -> float:
    return time.time() * 1000


class WorkQueue:
    def __init__(
        self,
        store: KeyValueStore,
        claim_ttl_seconds: int = 1800,
        kick_lock_ttl_seconds: int = 60,
        clock: Callable[[], float] = _epoch_ms,
    ):
        self.store = store
        self.claim_ttl_seconds = claim_ttl_seconds
        self.kick_lock_ttl_seconds = kick_lock_ttl_seconds
        self.clock = clock

    async def _read_active(self) -> Optional[ActiveClaim]:
        raw = await self.store.get(SERIES_QUEUE_ACTIVE)
        return self._parse_claim(raw)

    @staticmethod
    def _parse_claim(raw: Optional[str]) -> Optional[ActiveClaim]:
        if not raw:
            return None
        try:
            return ActiveClaim.model_validate_json(raw)
        except ValidationError:
            logger.warning("Active claim record is malformed; treating slot as held")
            return ActiveClaim(series_id="", token="", claimed_at="")

    async def enqueue(self, series_id: str) -> Optional[EnqueueResult]:
        """Add series to the queue unless already queued or active. None when the store is unavailable."""
        try:
            active = await self._read_active()
            if active and active.series_id == series_id:
                return EnqueueResult(enqueued=False, position=0)

            added = await self.store.zadd_nx(SERIES_QUEUE, self.clock(), series_id)
            rank = await self.store.zrank(SERIES_QUEUE, series_id)
        except StoreError as e:
            logger.warning(f"Enqueue failed for {series_id}: {e}")
            return None

        if rank is None:
            # Claimed between our add and the rank lookup
            return EnqueueResult(enqueued=added, position=0)
        if added:
            logger.info(f"Enqueued {series_id} at position {rank + 1}")
        return EnqueueResult(enqueued=added, position=rank + 1)

    async def position(self, series_id: str) -> Optional[int]:
        """0 when active, 1-based rank when queued, None when neither."""
        try:
            active = await self._read_active()
            if active and active.series_id == series_id:
                return 0
            rank = await self.store.zrank(SERIES_QUEUE, series_id)
        except StoreError as e:
            logger.warning(f"Queue position lookup failed for {series_id}: {e}")
            return None
        return None if rank is None else rank + 1

    async def claim_next(self) -> Optional[QueueClaim]:
        try:
            if await self.store.get(SERIES_QUEUE_ACTIVE):
                return None

            head = await self.store.zrange_with_scores(SERIES_QUEUE, 0, 0)
            if not head:
                return None
            series_id = head[0][0]

            token = secrets.token_hex(16)
            claim = ActiveClaim(series_id=series_id, token=token, claimed_at=now_iso())
            raw = claim.to_json()
            if not await self.store.set_nx(SERIES_QUEUE_ACTIVE, raw, ex=self.claim_ttl_seconds):
                return None

            removed = await self.store.zrem(SERIES_QUEUE, series_id)
            if not removed:
                logger.warning(f"Lost claim race for {series_id}; rolling back claim")
                await self.store.delete_if_equals(SERIES_QUEUE_ACTIVE, raw)
                return None
        except StoreError as e:
            logger.warning(f"Claim failed: {e}")
            return None

        logger.info(f"Claimed {series_id} from queue")
        return QueueClaim(series_id=series_id, token=token)

    async def finalize(self, series_id: str, token: str, requeue: bool = False) -> bool:
        """
        Clear the active claim if it still belongs to (series_id, token).
        With requeue, the series goes back to the tail of the queue, unless a
        newer claim for the same series is currently active.
        Returns True when this call cleared the claim.
        """
        cleared = False
        try:
            raw = await self.store.get(SERIES_QUEUE_ACTIVE)
            active = self._parse_claim(raw)
            if active and active.series_id == series_id and active.token == token:
                cleared = await self.store.delete_if_equals(SERIES_QUEUE_ACTIVE, raw)
            elif active:
                logger.info(f"Stale finalize for {series_id} ignored; active claim is {active.series_id}")

            held_by_other = active is not None and active.series_id == series_id and not cleared
            if requeue and not held_by_other:
                await self.store.zadd_nx(SERIES_QUEUE, self.clock(), series_id)
                logger.info(f"Requeued {series_id}")
        except StoreError as e:
            logger.warning(f"Finalize failed for {series_id}: {e}")
            return False
        return cleared

    async def queue_has_items(self) -> bool:
        try:
            return await self.store.zcard(SERIES_QUEUE) > 0
        except StoreError as e:
            logger.warning(f"Queue length check failed: {e}")
            return False

    async def queue_length(self) -> int:
        try:
            return await self.store.zcard(SERIES_QUEUE)
        except StoreError as e:
            logger.warning(f"Queue length check failed: {e}")
            return 0

    # Kick lock
    async def acquire_kick_lock(self, token: Optional[str] = None) -> bool:
        try:
            return await self.store.set_nx(SERIES_QUEUE_KICK, token or secrets.token_hex(8), ex=self.kick_lock_ttl_seconds)
        except StoreError as e:
            logger.warning(f"Kick lock acquire failed: {e}")
            return False

    async def release_kick_lock(self, token: Optional[str] = None) -> bool:
        """Without a token the lock is cleared unconditionally; with one, only while it still holds that token."""
        try:
            if token is None:
                return await self.store.delete(SERIES_QUEUE_KICK) > 0
            return await self.store.delete_if_equals(SERIES_QUEUE_KICK, token)
        except StoreError as e:
            logger.warning(f"Kick lock release failed: {e}")
            return False

    async def send_kick(self, send_event: Callable[[str, Dict[str, Any]], Awaitable[bool]]) -> bool:
        """Send one queue kick carrying the kick-lock token. False when a kick is already pending or the send fails."""
        token = secrets.token_hex(8)
        if not await self.acquire_kick_lock(token):
            logger.info("Queue kick already pending")
            return False
        if not await send_event(EVENT_SERIES_QUEUE_KICK, {"kick_token": token}):
            logger.warning("Queue kick could not be sent, releasing kick lock")
            await self.release_kick_lock(token)
            return False
        return True

    # Admin
    async def get_queue_status(self, progress: ProgressTracker) -> Optional[QueueStatus]:
        try:
            active = await self._read_active()
            rows = await self.store.zrange_with_scores(SERIES_QUEUE, 0, -1)
            kick_locked = await self.store.get(SERIES_QUEUE_KICK) is not None
        except StoreError as e:
            logger.warning(f"Queue status unavailable: {e}")
            return None

        active_view = None
        active_progress = None
        if active:
            active_view = ActiveClaimView(series_id=active.series_id, claimed_at=active.claimed_at)
            active_progress = await progress.read(active.series_id)
        return QueueStatus(
            active=active_view,
            active_progress=active_progress,
            queued=[QueuedItem(series_id=member, enqueued_at=int(score)) for member, score in rows],
            kick_locked=kick_locked,
        )

    async def unblock_queue(self) -> UnblockResult:
        """Force-clear the active claim and kick lock. Operator escape hatch for a stuck worker."""
        try:
            cleared_claim = await self.store.delete(SERIES_QUEUE_ACTIVE)
            cleared_kick = await self.store.delete(SERIES_QUEUE_KICK)
            length = await self.store.zcard(SERIES_QUEUE)
        except StoreError as e:
            logger.warning(f"Unblock failed: {e}")
            return UnblockResult(unblocked=False)
        logger.warning(
            f"Queue unblocked (claim cleared={bool(cleared_claim)}, kick cleared={bool(cleared_kick)}, {length} queued)"
        )
        return UnblockResult(unblocked=True, queue_length=length)
