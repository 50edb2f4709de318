"""
NRK radio catalog client for NRSS.
- Async httpx client against psapi.nrk.no.
- Podcast endpoints first, falling back to the radio series endpoints.
- Umbrella series are listed season by season.
- Optional per-request delay with jitter; 429 handled with exponential backoff.
- No in-module caching; snapshots are cached by the series cache.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx

from app.core.config import settings
from app.schemas import EpisodeResource, ResolvedEpisode, SeriesCatalog, SeriesMetadata
from app.services.rate_limit import RateLimitExceeded, delay_with_jitter, sleep_ms, with_backoff

logger = logging.getLogger(__name__)

EPISODES_PAGE_SIZE = 50


class NrkAPIError(Exception):
    """Base exception for NRK API errors."""
    pass


class NrkNetworkError(NrkAPIError):
    """Raised when network or connection to NRK fails."""
    pass


def _episode_resource(raw: Dict[str, Any]) -> Optional[EpisodeResource]:
    episode_id = raw.get("episodeId") or raw.get("id")
    if not episode_id:
        return None
    titles = raw.get("titles") or {}
    share = (raw.get("_links") or {}).get("share") or {}
    return EpisodeResource(
        episode_id=episode_id,
        title=titles.get("title") or "",
        subtitle=titles.get("subtitle"),
        date=raw.get("date") or "",
        duration_in_seconds=int(raw.get("durationInSeconds") or 0),
        share_link=share.get("href") or "",
    )


def _series_metadata(body: Dict[str, Any]) -> Optional[SeriesMetadata]:
    series = body.get("series")
    if not series or not series.get("id"):
        return None
    titles = series.get("titles") or {}
    images = series.get("squareImage") or []
    return SeriesMetadata(
        id=series["id"],
        title=titles.get("title") or series["id"],
        subtitle=titles.get("subtitle"),
        image_url=(images[-1].get("url") if images else "") or "",
    )


class NrkClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_delay_ms: Optional[int] = None,
        fetch_delay_jitter: Optional[float] = None,
        timeout: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.nrk_api_base_url).rstrip("/")
        self._http = http_client
        self.fetch_delay_ms = settings.nrk_fetch_delay_ms if fetch_delay_ms is None else fetch_delay_ms
        self.fetch_delay_jitter = settings.fetch_delay_jitter if fetch_delay_jitter is None else fetch_delay_jitter
        self.timeout = timeout or settings.nrk_timeout_seconds

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    async def _get(self, url: str, params: Optional[dict] = None) -> httpx.Response:
        if self._http is not None:
            return await self._http.get(url, params=params)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, params=params)

    async def fetch_json(self, path_or_url: str, params: Optional[dict] = None, delay: bool = True) -> Tuple[int, Any]:
        """GET and decode JSON. Returns (status, body); body is None when the response is not JSON."""
        url = self._url(path_or_url)

        async def make_request():
            try:
                resp = await self._get(url, params=params)
            except httpx.TimeoutException as e:
                raise NrkNetworkError(f"Timeout fetching {url}") from e
            except httpx.TransportError as e:
                raise NrkNetworkError(f"Network error fetching {url}: {e}") from e
            if resp.status_code == 429:
                retry_after = resp.headers.get("Retry-After")
                raise RateLimitExceeded(
                    f"NRK rate limited {url}",
                    service="nrk_api",
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            return resp

        resp = await with_backoff(make_request, max_retries=4, service="nrk_api")
        try:
            body = resp.json()
        except ValueError:
            body = None
        if delay:
            await sleep_ms(delay_with_jitter(self.fetch_delay_ms, self.fetch_delay_jitter))
        return resp.status_code, body

    async def _safe_fetch_json(self, path_or_url: str, params: Optional[dict] = None, delay: bool = True) -> Tuple[int, Any]:
        try:
            return await self.fetch_json(path_or_url, params=params, delay=delay)
        except (NrkAPIError, RateLimitExceeded) as e:
            logger.warning(f"NRK request failed: {e}")
            return 0, None

    # Series lookup
    async def _series_body(self, series_id: str) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Catalog body and whether it came from the podcast endpoints."""
        episodes_res, series_res = await asyncio.gather(
            self._safe_fetch_json(f"/radio/catalog/podcast/{series_id}/episodes", params={"pageSize": EPISODES_PAGE_SIZE}),
            self._safe_fetch_json(f"/radio/catalog/podcast/{series_id}"),
        )
        status, body = series_res
        if episodes_res[0] == 200 and status == 200 and body and body.get("series"):
            return body, True

        logger.debug(f"{series_id}: podcast catalog unavailable, trying series endpoints")
        status, body = await self._safe_fetch_json(f"/radio/catalog/series/{series_id}")
        if status != 200 or not body or not body.get("series"):
            logger.info(f"{series_id}: no series data (status={status})")
            return None, False
        return body, False

    async def _season_episodes(self, seasons: List[Dict[str, Any]]) -> List[EpisodeResource]:
        resources: List[EpisodeResource] = []
        for season in seasons:
            href = season.get("href")
            if not href:
                continue
            status, body = await self._safe_fetch_json(href)
            if status != 200 or not body:
                continue
            raw_episodes = (((body.get("_embedded") or {}).get("episodes") or {}).get("_embedded") or {}).get("episodes") or []
            resources.extend(r for r in map(_episode_resource, raw_episodes) if r)
        return resources

    async def _paged_episodes(
        self, series_id: str, is_podcast: bool, known_ids: Optional[Set[str]] = None
    ) -> List[EpisodeResource]:
        """Walk the paged episode list. With known_ids, stop at the first already-known episode."""
        kind = "podcast" if is_podcast else "series"
        base = f"/radio/catalog/{kind}/{series_id}/episodes"
        url: Optional[str] = f"{base}?pageSize={EPISODES_PAGE_SIZE}&page=1"
        resources: List[EpisodeResource] = []
        seen = 0

        while url:
            status, body = await self._safe_fetch_json(url)
            if status != 200 or not body:
                break
            raw_episodes = (body.get("_embedded") or {}).get("episodes") or []
            seen += len(raw_episodes)
            for raw in raw_episodes:
                resource = _episode_resource(raw)
                if resource is None:
                    continue
                if known_ids is not None and resource.episode_id in known_ids:
                    logger.debug(f"{series_id}: reached known episode {resource.episode_id}, stopping")
                    return resources
                resources.append(resource)

            next_href = ((body.get("_links") or {}).get("next") or {}).get("href")
            if next_href:
                url = next_href
            elif len(raw_episodes) >= EPISODES_PAGE_SIZE:
                url = f"{base}?pageSize={EPISODES_PAGE_SIZE}&page={seen // EPISODES_PAGE_SIZE + 1}"
            else:
                url = None

        if not resources:
            logger.debug(f"{series_id}: catalog returned 0 episodes")
        return resources

    async def _catalog(self, series_id: str, known_ids: Optional[Set[str]] = None) -> Optional[SeriesCatalog]:
        body, is_podcast = await self._series_body(series_id)
        if body is None:
            return None
        metadata = _series_metadata(body)
        if metadata is None:
            return None
        series_type = "series" if body.get("type") == "series" else "podcast"
        seasons = (body.get("_links") or {}).get("seasons") or []

        if body.get("seriesType") == "umbrella" and seasons:
            logger.debug(f"{series_id}: umbrella with {len(seasons)} seasons")
            resources = await self._season_episodes(seasons)
            if known_ids is not None:
                resources = [r for r in resources if r.episode_id not in known_ids]
        else:
            resources = await self._paged_episodes(series_id, is_podcast, known_ids)

        return SeriesCatalog(series=metadata, type=series_type, episode_resources=resources)

    async def fetch_catalog(self, series_id: str) -> Optional[SeriesCatalog]:
        catalog = await self._catalog(series_id)
        if catalog is None or not catalog.episode_resources:
            return None
        return catalog

    async def fetch_catalog_updates(self, series_id: str, known_ids: Set[str]) -> Optional[SeriesCatalog]:
        return await self._catalog(series_id, known_ids=set(known_ids))

    # Playback
    async def get_playback_url(self, episode_id: str, series_type: str, delay: bool = True) -> Optional[str]:
        primary, secondary = ("podcast", "program") if series_type == "podcast" else ("program", "podcast")
        endpoints = [
            f"/playback/manifest/{primary}/{episode_id}",
            f"/playback/manifest/{secondary}/{episode_id}",
            f"/playback/manifest/{episode_id}",
        ]
        for endpoint in endpoints:
            status, body = await self._safe_fetch_json(endpoint, delay=delay)
            if status != 200 or not body:
                continue
            assets = (body.get("playable") or {}).get("assets") or []
            if assets and assets[0].get("url"):
                return assets[0]["url"]
        return None

    async def resolve_playback_batch(
        self,
        resources: List[EpisodeResource],
        series_type: str,
        delay_per_request: bool = True,
    ) -> List[ResolvedEpisode]:
        """Resolve playable URLs. Sequential when pacing per request, concurrent otherwise."""

        async def resolve(resource: EpisodeResource) -> Optional[ResolvedEpisode]:
            try:
                url = await self.get_playback_url(resource.episode_id, series_type, delay=delay_per_request)
            except Exception as e:
                logger.debug(f"Playback lookup failed for {resource.episode_id}: {e}")
                return None
            if not url:
                logger.debug(f"Skipped non-playable: {resource.episode_id}")
                return None
            return ResolvedEpisode(**resource.model_dump(), url=url)

        if delay_per_request and self.fetch_delay_ms > 0:
            results = [await resolve(r) for r in resources]
        else:
            results = await asyncio.gather(*(resolve(r) for r in resources))
        return [r for r in results if r is not None]

    # Podcast category listing (backfill)
    async def list_podcasts_from_category(self, take: int = 100, skip: int = 0) -> List[Dict[str, str]]:
        status, body = await self._safe_fetch_json(
            "/radio/search/categories/podcast", params={"take": take, "skip": skip}
        )
        if status != 200 or not body or not body.get("series"):
            return []
        out = []
        for item in body["series"]:
            series_id = item.get("seriesId") or item.get("id")
            if series_id:
                out.append({"series_id": series_id, "title": item.get("title") or series_id})
        return out

    async def list_all_podcast_ids(self, take: int = 100) -> List[Dict[str, str]]:
        podcasts: List[Dict[str, str]] = []
        skip = 0
        while True:
            batch = await self.list_podcasts_from_category(take=take, skip=skip)
            if not batch:
                break
            podcasts.extend(batch)
            if len(batch) < take:
                break
            skip += take
        seen: Set[str] = set()
        unique = []
        for p in podcasts:
            if p["series_id"] in seen:
                continue
            seen.add(p["series_id"])
            unique.append(p)
        return unique
