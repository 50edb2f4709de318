"""
tasks.py

Celery consumers for the two events:

- nrss/series.fetch: full fetch of one series, triggered by the "direct"
  cache-miss strategy. Carries the fetch-lock token taken by the trigger and
  releases it once the fetch is finished (or has failed for good).
- nrss/series.queue.kick: one backfill queue worker invocation. Carries the
  kick-lock token of the sender; the scheduled sweep sends none.

Each task runs its coroutine on a fresh event loop with its own store
connection. Steps are memoized under the Celery task id, so a redelivered or
retried task resumes from the first unfinished step.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from celery import shared_task

from app.core.config import settings
from app.core.keys import EVENT_SERIES_FETCH, EVENT_SERIES_QUEUE_KICK
from app.core.store import KeyValueStore, create_store
from app.services.events import send_event
from app.services.feed_service import FeedService
from app.services.nrk_client import NrkClient
from app.services.orchestrator import REASON_UNEXPECTED, mark_failed, run_series_fetch
from app.services.queue_worker import process_queue_kick
from app.services.steps import InlineSteps, StepRunner

logger = logging.getLogger(__name__)


def extract_error_message(e: Exception) -> str:
    detail = getattr(e, "detail", None)
    if detail:
        if isinstance(detail, (dict, list)):
            return json.dumps(detail, default=str)
        return str(detail)
    if e.args:
        return str(e.args[0])
    return type(e).__name__


def _build_service(store: KeyValueStore) -> FeedService:
    return FeedService(store, NrkClient(), settings, send_event)


def _run_with_service(fn: Callable[[FeedService], Awaitable[Any]]) -> Any:
    """Run fn(service) on a fresh event loop with a connected store; always disconnects."""
    async def _run():
        store = create_store(settings)
        await store.connect()
        try:
            return await fn(_build_service(store))
        finally:
            await store.disconnect()

    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(_run())
    finally:
        try:
            loop.close()
        finally:
            asyncio.set_event_loop(None)


@shared_task(bind=True, max_retries=2, default_retry_delay=30, name=EVENT_SERIES_FETCH)
def fetch_series(self, series_id: str, lock_token: Optional[str] = None) -> Dict[str, Any]:
    job_id = f"fetch:{self.request.id or series_id}"

    async def _fetch(service: FeedService):
        steps = StepRunner(service.store, job_id, ttl_seconds=settings.step_memo_ttl_sec)
        result = await run_series_fetch(
            series_id,
            catalog=service.catalog,
            cache=service.cache,
            progress=service.progress,
            steps=steps,
            batch_size=settings.batch_size,
            batch_delay_seconds=settings.batch_delay_seconds,
        )
        return result.model_dump(exclude={"series"})

    async def _release(service: FeedService):
        if lock_token:
            await service.fetch_lock.release(series_id, lock_token)

    async def _fail(service: FeedService):
        await mark_failed(service.progress, series_id, REASON_UNEXPECTED)
        await _release(service)

    try:
        outcome = _run_with_service(_fetch)
    except Exception as exc:
        msg = extract_error_message(exc)
        if self.request.retries < self.max_retries:
            logger.warning(f"Series fetch failed for {series_id}, retrying: {msg}")
            # Lock stays held so no second fetch starts while the retry is pending
            raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))
        logger.error(f"Series fetch failed for {series_id}: {msg}")
        _run_with_service(_fail)
        raise

    _run_with_service(_release)
    logger.info(f"Series fetch finished for {series_id}: {outcome}")
    return outcome


@shared_task(bind=True, name=EVENT_SERIES_QUEUE_KICK)
def process_series_queue(self, kick_token: Optional[str] = None) -> Dict[str, Any]:
    job_id = f"kick:{self.request.id}" if self.request.id else None

    async def _kick(service: FeedService):
        steps = StepRunner(service.store, job_id, ttl_seconds=settings.step_memo_ttl_sec) if job_id else InlineSteps()

        async def run_fetch(series_id: str, fetch_steps: InlineSteps):
            return await run_series_fetch(
                series_id,
                catalog=service.catalog,
                cache=service.cache,
                progress=service.progress,
                steps=fetch_steps,
                batch_size=settings.batch_size,
                batch_delay_seconds=settings.batch_delay_seconds,
                queue_position=0,
            )

        return await process_queue_kick(
            queue=service.queue,
            progress=service.progress,
            send_event=service.send_event,
            run_fetch=run_fetch,
            steps=steps,
            kick_token=kick_token,
        )

    return _run_with_service(_kick)
