"""
queue_worker.py

One invocation of the backfill queue worker: claim the next series, fetch it
completely, finalize the claim, and if more work is queued hand off to a new
invocation by sending a single "queue kick" (only the winner of the kick
lock sends it, and a failed send frees the lock again). Invocations stay
short and independently retryable instead of running one long loop.

A series whose fetch raises is marked failed and dropped from the queue
(finalized without requeue) so one bad series cannot stall the queue.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from app.schemas import FetchResult, QueueClaim
from app.services.orchestrator import REASON_UNEXPECTED, mark_failed
from app.services.progress import ProgressTracker
from app.services.steps import InlineSteps
from app.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)

SendEvent = Callable[[str, Dict[str, Any]], Awaitable[bool]]
RunFetch = Callable[[str, InlineSteps], Awaitable[FetchResult]]


async def process_queue_kick(
    *,
    queue: WorkQueue,
    progress: ProgressTracker,
    send_event: SendEvent,
    run_fetch: RunFetch,
    steps: Optional[InlineSteps] = None,
    kick_token: Optional[str] = None,
) -> Dict[str, Any]:
    steps = steps or InlineSteps()

    # The kick that started this invocation is consumed; a scheduled sweep carries no token
    if kick_token:
        await queue.release_kick_lock(kick_token)

    async def claim_next():
        claim = await queue.claim_next()
        return claim.model_dump() if claim else None

    raw_claim = await steps.run("claim-next", claim_next)
    if not raw_claim:
        logger.info("Queue kick: nothing to claim")
        return {"processed": 0}
    claim = QueueClaim.model_validate(raw_claim)
    series_id = claim.series_id

    outcome: Dict[str, Any] = {"processed": 1, "series_id": series_id}
    try:
        result = await run_fetch(series_id, steps)
        outcome["stored"] = result.stored
        outcome["reason"] = result.reason
        outcome["episodes"] = result.episodes
    except Exception as e:
        logger.exception(f"Queue fetch failed unexpectedly for {series_id}: {e}")
        await mark_failed(progress, series_id, REASON_UNEXPECTED)
        outcome["stored"] = False
        outcome["reason"] = REASON_UNEXPECTED

    async def finalize():
        return await queue.finalize(series_id, claim.token, requeue=False)

    await steps.run("finalize", finalize)

    async def chain():
        if not await queue.queue_has_items():
            return False
        if not await queue.send_kick(send_event):
            return False
        logger.info(f"Queue kick sent after {series_id}")
        return True

    outcome["kicked"] = await steps.run("chain", chain)
    return outcome
