"""Shared fixtures: in-memory store with a controllable clock, fake NRK catalog, event recorder."""
import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Set

import pytest

from app.core.store import MemoryStore
from app.schemas import EpisodeResource, ResolvedEpisode, SeriesCatalog, SeriesMetadata
from app.utils.timezone import format_iso_utc, utc_now


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_resources(ids: List[str], newest_days_ago: int = 0) -> List[EpisodeResource]:
    """Episode references dated one day apart, first id newest."""
    now = utc_now()
    return [
        EpisodeResource(
            episode_id=episode_id,
            title=f"Episode {episode_id}",
            date=format_iso_utc(now - timedelta(days=newest_days_ago + i)),
            duration_in_seconds=600,
            share_link=f"https://radio.nrk.no/podkast/test/{episode_id}",
        )
        for i, episode_id in enumerate(ids)
    ]


class FakeCatalog:
    """CatalogClient double. Records every call; yields to the loop so concurrent callers interleave."""

    def __init__(
        self,
        resources: Optional[List[EpisodeResource]] = None,
        unplayable: Optional[Set[str]] = None,
        updates: Optional[List[EpisodeResource]] = None,
        series_type: str = "podcast",
    ):
        self.resources = resources
        self.unplayable = unplayable or set()
        self.updates = updates
        self.series_type = series_type
        self.fetch_calls: List[str] = []
        self.update_calls: List[Set[str]] = []
        self.resolve_calls: List[List[str]] = []
        self.fail_resolve = False

    def _catalog(self, series_id: str, resources: List[EpisodeResource]) -> SeriesCatalog:
        return SeriesCatalog(
            series=SeriesMetadata(id=series_id, title=f"Series {series_id}", image_url="https://img.example/s.jpg"),
            type=self.series_type,
            episode_resources=resources,
        )

    async def fetch_catalog(self, series_id: str) -> Optional[SeriesCatalog]:
        self.fetch_calls.append(series_id)
        await asyncio.sleep(0)
        if self.resources is None:
            return None
        return self._catalog(series_id, self.resources)

    async def fetch_catalog_updates(self, series_id: str, known_ids: Set[str]) -> Optional[SeriesCatalog]:
        self.update_calls.append(set(known_ids))
        await asyncio.sleep(0)
        if self.updates is None:
            return None
        return self._catalog(series_id, [r for r in self.updates if r.episode_id not in known_ids])

    async def resolve_playback_batch(self, resources, series_type, delay_per_request=True) -> List[ResolvedEpisode]:
        self.resolve_calls.append([r.episode_id for r in resources])
        await asyncio.sleep(0)
        if self.fail_resolve:
            raise RuntimeError("upstream exploded")
        return [
            ResolvedEpisode(**r.model_dump(), url=f"https://cdn.example/{r.episode_id}.mp3")
            for r in resources
            if r.episode_id not in self.unplayable
        ]


class EventRecorder:
    def __init__(self, ok: bool = True):
        self.events: List[tuple] = []
        self.ok = ok

    async def __call__(self, name: str, data: Optional[Dict] = None) -> bool:
        self.events.append((name, data or {}))
        return self.ok

    def named(self, name: str) -> List[Dict]:
        return [data for event, data in self.events if event == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def events():
    return EventRecorder()
