"""
schemas.py

Pydantic schemas for series snapshots, fetch progress, queue state and the
upstream catalog shapes passed between fetch steps.

Stored JSON uses camelCase field names (lastFetchedAt, shareLink, ...);
dump with by_alias=True when writing to the store or returning from the API.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class Episode(CamelModel):
    id: str
    title: str
    subtitle: Optional[str] = None
    url: str
    share_link: str = ""
    date: str
    duration_in_seconds: int = 0


class Series(CamelModel):
    id: str
    title: str
    subtitle: Optional[str] = None
    link: str
    image_url: str = ""
    last_fetched_at: str
    episodes: List[Episode] = []


ProgressStatus = Literal["queued", "running", "failed"]


class SeriesFetchProgress(CamelModel):
    status: ProgressStatus
    queue_position: Optional[int] = None
    total_batches: int = 0
    completed_batches: int = 0
    total_episodes: int = 0
    completed_episodes: int = 0
    message: Optional[str] = None
    updated_at: str


# Queue
class EnqueueResult(CamelModel):
    enqueued: bool
    position: int


class QueueClaim(CamelModel):
    series_id: str
    token: str


class ActiveClaim(CamelModel):
    series_id: str
    token: str
    claimed_at: str


class ActiveClaimView(CamelModel):
    series_id: str
    claimed_at: str


class QueuedItem(CamelModel):
    series_id: str
    enqueued_at: int


class QueueStatus(CamelModel):
    active: Optional[ActiveClaimView] = None
    active_progress: Optional[SeriesFetchProgress] = None
    queued: List[QueuedItem] = []
    kick_locked: bool = False


class UnblockResult(CamelModel):
    unblocked: bool
    queue_length: int = 0


# Upstream catalog (NRK)
class SeriesMetadata(BaseModel):
    id: str
    title: str
    subtitle: Optional[str] = None
    image_url: str = ""


class EpisodeResource(BaseModel):
    """An entry reference: everything about an episode except its playable location."""
    episode_id: str
    title: str = ""
    subtitle: Optional[str] = None
    date: str = ""
    duration_in_seconds: int = 0
    share_link: str = ""


class ResolvedEpisode(EpisodeResource):
    url: str


class SeriesCatalog(BaseModel):
    series: SeriesMetadata
    type: Literal["series", "podcast"] = "podcast"
    episode_resources: List[EpisodeResource] = []


class FetchResult(BaseModel):
    stored: bool
    reason: Optional[str] = None
    episodes: int = 0
    series: Optional[Series] = None
