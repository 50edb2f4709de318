"""
orchestrator.py

Batch pipeline that fetches one series from NRK and stores it:

    QUEUED -> RUNNING(batch i/n) -> STORED
                                 -> FAILED(no_data)
                                 -> FAILED(no_playable_episodes)

1. get-catalog: metadata and every episode reference. Nothing -> no_data.
2. Progress "running" with batch/episode totals.
3. fetch-batch-{i}: resolve playback for one fixed-size batch. Episodes that
   cannot be resolved are dropped. Progress is updated after each batch and
   the job sleeps between batches (rate-limit-{i}) when a delay is set.
4. Zero playable episodes -> no_playable_episodes.
5. Persist the snapshot (a failed write is logged, the job still succeeds),
   clear progress.

Each step goes through `steps`, which memoizes results per job when run from
a Celery task, so redelivery or retry resumes where the previous run stopped.
"""
import logging
import math
from typing import List, Optional

from app.schemas import FetchResult, ResolvedEpisode, SeriesCatalog
from app.services.catalog import CatalogClient, parse_series, trim_series_to_size
from app.services.progress import ProgressTracker, make_progress
from app.services.steps import InlineSteps

logger = logging.getLogger(__name__)

REASON_NO_DATA = "no_data"
REASON_NO_PLAYABLE_EPISODES = "no_playable_episodes"
REASON_PERSISTENCE_FAILURE = "persistence_failure"
REASON_UNEXPECTED = "unexpected"

FAILURE_MESSAGES = {
    REASON_NO_DATA: "NRK returned no data for this series",
    REASON_NO_PLAYABLE_EPISODES: "No playable episodes found",
    REASON_UNEXPECTED: "Unexpected error while fetching",
}


async def mark_failed(progress: ProgressTracker, series_id: str, reason: str) -> None:
    await progress.write(series_id, make_progress("failed", message=FAILURE_MESSAGES.get(reason, reason)))


async def run_series_fetch(
    series_id: str,
    *,
    catalog: CatalogClient,
    cache,
    progress: ProgressTracker,
    steps: Optional[InlineSteps] = None,
    batch_size: int = 10,
    batch_delay_seconds: float = 0.0,
    queue_position: Optional[int] = None,
) -> FetchResult:
    """Run the full fetch for one series. `cache` provides write_series() and max_bytes."""
    steps = steps or InlineSteps()
    batch_size = batch_size if batch_size > 0 else 10

    async def get_catalog():
        result = await catalog.fetch_catalog(series_id)
        return result.model_dump() if result else None

    raw_catalog = await steps.run("get-catalog", get_catalog)
    series_catalog = SeriesCatalog.model_validate(raw_catalog) if raw_catalog else None
    if series_catalog is None or not series_catalog.episode_resources:
        logger.warning(f"No data from NRK for: {series_id}")
        await mark_failed(progress, series_id, REASON_NO_DATA)
        return FetchResult(stored=False, reason=REASON_NO_DATA)

    resources = series_catalog.episode_resources
    total_episodes = len(resources)
    batch_count = math.ceil(total_episodes / batch_size)
    await progress.write(series_id, make_progress(
        "running",
        queue_position=queue_position,
        total_batches=batch_count,
        completed_batches=0,
        total_episodes=total_episodes,
        completed_episodes=0,
    ))

    episodes: List[ResolvedEpisode] = []
    for i in range(batch_count):
        batch = resources[i * batch_size:(i + 1) * batch_size]

        async def fetch_batch(i=i, batch=batch):
            result = await catalog.resolve_playback_batch(batch, series_catalog.type, delay_per_request=False)
            logger.info(f"Executed batch {i + 1}/{batch_count} for {series_id}: {len(result)} playable")
            return [ep.model_dump() for ep in result]

        raw_batch = await steps.run(f"fetch-batch-{i}", fetch_batch)
        episodes.extend(ResolvedEpisode.model_validate(ep) for ep in raw_batch)

        await progress.write(series_id, make_progress(
            "running",
            queue_position=queue_position,
            total_batches=batch_count,
            completed_batches=i + 1,
            total_episodes=total_episodes,
            completed_episodes=min(total_episodes, (i + 1) * batch_size),
        ))
        if batch_delay_seconds > 0 and i < batch_count - 1:
            await steps.sleep(f"rate-limit-{i}", batch_delay_seconds)

    if not episodes:
        logger.warning(f"No playable episodes for: {series_id}")
        await mark_failed(progress, series_id, REASON_NO_PLAYABLE_EPISODES)
        return FetchResult(stored=False, reason=REASON_NO_PLAYABLE_EPISODES)

    series = trim_series_to_size(parse_series(series_catalog.series, episodes), cache.max_bytes)

    async def persist():
        return await cache.write_series(series)

    ok = await steps.run("persist", persist)
    reason = None
    if not ok:
        logger.warning(f"Failed to persist: {series_id}")
        reason = REASON_PERSISTENCE_FAILURE
    await progress.clear(series_id)
    logger.info(f"Fetched and stored: {series_id} ({len(series.episodes)} episodes)")
    return FetchResult(stored=True, reason=reason, episodes=len(series.episodes), series=series)
