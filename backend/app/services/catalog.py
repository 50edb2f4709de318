"""
catalog.py

The upstream catalog collaborator as seen by the cache and the fetch
orchestrator, plus conversion of catalog data into stored snapshots.
"""
import logging
from typing import Iterable, List, Optional, Protocol, Set

from app.schemas import Episode, EpisodeResource, ResolvedEpisode, Series, SeriesCatalog, SeriesMetadata
from app.utils.timezone import now_iso, parse_iso_utc

logger = logging.getLogger(__name__)

SERIES_LINK_BASE = "https://radio.nrk.no/podkast/"
MAX_SERIES_BYTES = 65_536


class CatalogClient(Protocol):
    async def fetch_catalog(self, series_id: str) -> Optional[SeriesCatalog]:
        """Series metadata and every episode reference, or None when the upstream has nothing."""
        ...

    async def fetch_catalog_updates(self, series_id: str, known_ids: Set[str]) -> Optional[SeriesCatalog]:
        """Like fetch_catalog but only episode references whose id is not in known_ids."""
        ...

    async def resolve_playback_batch(
        self,
        resources: List[EpisodeResource],
        series_type: str,
        delay_per_request: bool = True,
    ) -> List[ResolvedEpisode]:
        """Playable episodes for the given references; unresolvable ones are dropped."""
        ...


def _date_sort_key(episode: Episode) -> float:
    parsed = parse_iso_utc(episode.date)
    return parsed.timestamp() if parsed else float("-inf")


def sort_episodes(episodes: Iterable[Episode]) -> List[Episode]:
    """Newest first."""
    return sorted(episodes, key=_date_sort_key, reverse=True)


def to_episode(resolved: ResolvedEpisode) -> Episode:
    return Episode(
        id=resolved.episode_id,
        title=resolved.title,
        subtitle=resolved.subtitle,
        url=resolved.url,
        share_link=resolved.share_link,
        date=resolved.date,
        duration_in_seconds=resolved.duration_in_seconds,
    )


def parse_series(series: SeriesMetadata, episodes: List[ResolvedEpisode]) -> Series:
    return Series(
        id=series.id,
        title=series.title,
        subtitle=series.subtitle,
        link=f"{SERIES_LINK_BASE}{series.id}",
        image_url=series.image_url,
        last_fetched_at=now_iso(),
        episodes=sort_episodes(to_episode(ep) for ep in episodes),
    )


def series_size_bytes(series: Series) -> int:
    return len(series.to_json().encode("utf-8"))


def trim_series_to_size(series: Series, max_bytes: int = MAX_SERIES_BYTES) -> Series:
    """Drop the oldest (last) episodes until the serialized snapshot fits in max_bytes."""
    size = series_size_bytes(series)
    if size <= max_bytes:
        return series

    episodes = list(series.episodes)
    while episodes and size > max_bytes:
        dropped = episodes.pop()
        # compact JSON: the element plus its separating comma
        size -= len(dropped.to_json().encode("utf-8")) + (1 if episodes else 0)
    trimmed = series.model_copy(update={"episodes": episodes})

    while trimmed.episodes and series_size_bytes(trimmed) > max_bytes:
        trimmed = trimmed.model_copy(update={"episodes": trimmed.episodes[:-1]})
    logger.info(f"Trimmed {series.id} from {len(series.episodes)} to {len(trimmed.episodes)} episodes")
    return trimmed
