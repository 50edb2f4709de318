"""
Backfill the series cache with every podcast in the NRK podcast category.

Series from the priority file go first. Series that already have a snapshot
are skipped unless --no-skip-existing is given. By default the series are put
on the backfill work queue and one queue kick is sent, so the Celery workers
drain it at their own pace. With --inline each series is fetched in this
process, one after another, with a jittered delay in between.

Usage:
    PYTHONPATH=backend python -m app.scripts.backfill [SERIES_ID]

Options:
    --priority-file PATH  JSON array of series ids to backfill first
    --priority-only       Only backfill the series in the priority file
    --no-skip-existing    Re-fetch series that already have a snapshot
    --inline              Fetch in this process instead of enqueueing
    --delay-ms N          Delay between series in --inline mode
"""
import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from app.core.config import settings
from app.core.store import create_store
from app.services.events import send_event
from app.services.feed_service import FeedService
from app.services.nrk_client import NrkClient
from app.services.progress import make_progress
from app.services.rate_limit import delay_with_jitter, sleep_ms

logging.basicConfig(
    level=logging.INFO,
    format='[%(levelname)s] %(message)s'
)
logger = logging.getLogger(__name__)


def load_priority_series(path: str) -> List[str]:
    try:
        ids = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    return [str(i) for i in ids] if isinstance(ids, list) else []


def order_podcasts(
    podcasts: List[Dict[str, str]],
    priority_ids: List[str],
    priority_only: bool = False,
) -> List[Dict[str, str]]:
    """Priority ids first (in file order, even when the category listing lacks them), then the rest."""
    if not priority_ids:
        return podcasts
    by_id = {p["series_id"]: p for p in podcasts}
    priority = [by_id.get(i, {"series_id": i, "title": i}) for i in priority_ids]
    if priority_only:
        return priority
    priority_set = set(priority_ids)
    return priority + [p for p in podcasts if p["series_id"] not in priority_set]


async def backfill(
    service: FeedService,
    podcasts: List[Dict[str, str]],
    *,
    skip_existing: bool = True,
    inline: bool = False,
    delay_ms: int = 0,
    delay_jitter: float = 0.5,
) -> Dict[str, int]:
    stats = {"queued": 0, "fetched": 0, "skipped": 0, "failed": 0}
    total = len(podcasts)

    for podcast in podcasts:
        series_id, title = podcast["series_id"], podcast.get("title") or podcast["series_id"]
        if skip_existing and await service.cache.read_series(series_id) is not None:
            stats["skipped"] += 1
            continue

        if not inline:
            result = await service.queue.enqueue(series_id)
            if result is None:
                stats["failed"] += 1
                logger.error(f"Could not enqueue {series_id} ({title})")
                continue
            if result.enqueued:
                await service.progress.write(series_id, make_progress("queued", queue_position=result.position))
                stats["queued"] += 1
            continue

        try:
            series = await service.cache.initial_fetch(series_id)
        except Exception as e:
            stats["failed"] += 1
            logger.error(f"Failed {series_id} ({title}): {e}")
        else:
            if series is not None:
                stats["fetched"] += 1
                logger.info(f"[{stats['fetched']}/{total}] {title} ({len(series.episodes)} episodes)")
            else:
                stats["failed"] += 1
                logger.error(f"No data for {series_id} ({title})")
        await sleep_ms(delay_with_jitter(delay_ms, delay_jitter))

    if not inline and stats["queued"] > 0:
        if await service.queue.send_kick(service.send_event):
            logger.info("Queue kick sent")
    return stats


async def main(args: argparse.Namespace) -> Dict[str, int]:
    store = create_store(settings)
    await store.connect()
    try:
        catalog = NrkClient()
        service = FeedService(store, catalog, settings, send_event)

        if args.series_id:
            podcasts = [{"series_id": args.series_id, "title": args.series_id}]
            logger.info(f"Backfilling single podcast: {args.series_id}")
        else:
            podcasts = await catalog.list_all_podcast_ids()
            priority_ids = load_priority_series(args.priority_file)
            podcasts = order_podcasts(podcasts, priority_ids, priority_only=args.priority_only)
            if args.priority_only:
                logger.info(f"Priority-only mode: {len(podcasts)} series")
            logger.info(f"Found {len(podcasts)} podcasts")

        logger.info(
            f"Settings: inline={args.inline}, delay={args.delay_ms}ms, "
            f"NRK_FETCH_DELAY_MS={settings.nrk_fetch_delay_ms}ms, skip existing={args.skip_existing}"
        )
        stats = await backfill(
            service,
            podcasts,
            skip_existing=args.skip_existing,
            inline=args.inline,
            delay_ms=args.delay_ms,
            delay_jitter=settings.backfill_delay_jitter,
        )
    finally:
        await store.disconnect()

    logger.info(
        f"Done. Queued: {stats['queued']}, fetched: {stats['fetched']}, "
        f"skipped: {stats['skipped']}, failed: {stats['failed']}"
    )
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Backfill the NRK podcast series cache")
    parser.add_argument("series_id", nargs="?", default=None, help="Backfill a single series id")
    parser.add_argument("--priority-file", default=settings.backfill_priority_file,
                        help="JSON array of series ids to backfill first")
    parser.add_argument("--priority-only", action="store_true", default=settings.backfill_priority_only,
                        help="Only backfill series from the priority file")
    parser.add_argument("--no-skip-existing", dest="skip_existing", action="store_false",
                        default=settings.backfill_skip_existing,
                        help="Re-fetch series that already have a snapshot")
    parser.add_argument("--inline", action="store_true", help="Fetch in this process instead of enqueueing")
    parser.add_argument("--delay-ms", type=int, default=settings.backfill_delay_ms,
                        help="Delay between series in --inline mode")
    return parser


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    stats = asyncio.run(main(args))
    return 1 if stats["failed"] and not (stats["queued"] or stats["fetched"]) else 0


if __name__ == '__main__':
    raise SystemExit(run())
