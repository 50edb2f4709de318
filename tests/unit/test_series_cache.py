import asyncio
from datetime import timedelta

import pytest

from app.core.keys import series_key
from app.core.store import MemoryStore, StoreError
from app.schemas import ResolvedEpisode, SeriesMetadata
from app.services.catalog import parse_series, series_size_bytes, trim_series_to_size
from app.services.fetch_lock import FetchLock
from app.services.series_cache import MODE_FETCH, MODE_TRIGGER, SeriesCache, is_stale
from app.utils.timezone import format_iso_utc, utc_now

from conftest import FakeCatalog, make_resources


def make_series(series_id, episode_ids, fetched_minutes_ago=0, newest_days_ago=0):
    resolved = [
        ResolvedEpisode(**r.model_dump(), url=f"https://cdn.example/{r.episode_id}.mp3")
        for r in make_resources(episode_ids, newest_days_ago=newest_days_ago)
    ]
    series = parse_series(SeriesMetadata(id=series_id, title="Test"), resolved)
    fetched = format_iso_utc(utc_now() - timedelta(minutes=fetched_minutes_ago))
    return series.model_copy(update={"last_fetched_at": fetched})


def test_staleness_boundary():
    now = utc_now()
    assert is_stale(format_iso_utc(now - timedelta(minutes=61)), now=now) is True
    assert is_stale(format_iso_utc(now - timedelta(minutes=59)), now=now) is False
    assert is_stale("2024-01-01T10:00:00Z", now=now) is True


def test_unparseable_timestamp_is_stale():
    assert is_stale("yesterday-ish") is True
    assert is_stale("") is True
    assert is_stale(None) is True


def test_trim_removes_tail_until_within_budget():
    series = make_series("big", [f"e{i}" for i in range(200)])
    budget = series_size_bytes(series) // 3

    trimmed = trim_series_to_size(series, budget)
    assert series_size_bytes(trimmed) <= budget
    assert 0 < len(trimmed.episodes) < len(series.episodes)
    assert [e.id for e in trimmed.episodes] == [e.id for e in series.episodes[:len(trimmed.episodes)]]
    # One more episode would not have fit
    next_fit = series.model_copy(update={"episodes": series.episodes[:len(trimmed.episodes) + 1]})
    assert series_size_bytes(next_fit) > budget


def test_trim_keeps_snapshot_within_budget_untouched():
    series = make_series("small", ["e1", "e2", "e3"])
    assert trim_series_to_size(series, series_size_bytes(series)) is series


def test_trim_handles_very_large_snapshot():
    series = make_series("huge", [f"e{i}" for i in range(5000)])
    trimmed = trim_series_to_size(series, 2048)
    assert series_size_bytes(trimmed) <= 2048


@pytest.mark.asyncio
async def test_concurrent_misses_fetch_upstream_once(store):
    catalog = FakeCatalog(resources=make_resources(["e1", "e2", "e3"]))
    cache = SeriesCache(store, catalog, fetch_lock=FetchLock(store))

    results = await asyncio.gather(*(cache.get_series("new-show", mode=MODE_FETCH) for _ in range(10)))

    assert catalog.fetch_calls == ["new-show"]
    stored = [r for r in results if r is not None]
    assert len(stored) >= 1
    assert all(r.id == "new-show" for r in stored)
    snapshot = await cache.read_series("new-show")
    assert [e.id for e in snapshot.episodes] == ["e1", "e2", "e3"]
    assert await store.get("series-lock:new-show") is None


class LateMissStore(MemoryStore):
    """One reader's first snapshot read answers "absent" only after the other fetch has stored the snapshot."""

    def __init__(self):
        super().__init__()
        self.late_reader = None
        self.late_served = False
        self.first_done = asyncio.Event()

    async def get(self, key):
        if key == series_key("new-show") and asyncio.current_task() is self.late_reader and not self.late_served:
            self.late_served = True
            await self.first_done.wait()
            return None
        return await super().get(key)


@pytest.mark.asyncio
async def test_miss_read_before_store_does_not_fetch_again():
    store = LateMissStore()
    catalog = FakeCatalog(resources=make_resources(["e1", "e2"]))
    cache = SeriesCache(store, catalog, fetch_lock=FetchLock(store))

    async def first():
        try:
            return await cache.get_series("new-show", mode=MODE_FETCH)
        finally:
            store.first_done.set()

    first_task = asyncio.create_task(first())
    late_task = asyncio.create_task(cache.get_series("new-show", mode=MODE_FETCH))
    store.late_reader = late_task
    results = await asyncio.gather(first_task, late_task)

    assert store.late_served is True
    assert catalog.fetch_calls == ["new-show"]
    assert [r.id for r in results] == ["new-show", "new-show"]
    assert [e.id for e in results[1].episodes] == ["e1", "e2"]


@pytest.mark.asyncio
async def test_lock_loser_returns_stored_snapshot(store):
    catalog = FakeCatalog(resources=make_resources(["e1"]))
    lock = FetchLock(store)
    cache = SeriesCache(store, catalog, fetch_lock=lock)
    token = await lock.acquire("show")

    assert await cache.initial_fetch("show") is None

    await cache.write_series(make_series("show", ["e1", "e2"]))
    served = await cache.initial_fetch("show")

    assert [e.id for e in served.episodes] == ["e1", "e2"]
    assert catalog.fetch_calls == []
    assert await lock.release("show", token) is True


@pytest.mark.asyncio
async def test_trigger_mode_miss_returns_none_without_upstream_calls(store):
    catalog = FakeCatalog(resources=make_resources(["e1"]))
    cache = SeriesCache(store, catalog)
    assert await cache.get_series("x", mode=MODE_TRIGGER) is None
    assert catalog.fetch_calls == []


@pytest.mark.asyncio
async def test_fresh_hit_is_served_as_stored(store):
    catalog = FakeCatalog(resources=[])
    cache = SeriesCache(store, catalog)
    series = make_series("s", ["e1", "e2"], fetched_minutes_ago=5)
    await cache.write_series(series)

    result = await cache.get_series("s")
    assert result == series
    assert catalog.fetch_calls == [] and catalog.update_calls == []


@pytest.mark.asyncio
async def test_stale_hit_merges_new_episodes_in_front(store):
    existing = make_series("s", ["e3", "e4"], fetched_minutes_ago=120, newest_days_ago=2)
    catalog = FakeCatalog(updates=make_resources(["e1", "e2", "e3", "e4"]))
    cache = SeriesCache(store, catalog)
    await cache.write_series(existing)

    result = await cache.get_series("s", mode=MODE_TRIGGER)

    assert [e.id for e in result.episodes] == ["e1", "e2", "e3", "e4"]
    assert catalog.update_calls == [{"e3", "e4"}]
    assert catalog.resolve_calls == [["e1", "e2"]]
    assert result.last_fetched_at != existing.last_fetched_at
    assert (await cache.read_series("s")) == result


@pytest.mark.asyncio
async def test_stale_hit_with_nothing_new_is_not_written(store):
    existing = make_series("s", ["e1", "e2"], fetched_minutes_ago=120)
    catalog = FakeCatalog(updates=make_resources(["e1", "e2"]))
    cache = SeriesCache(store, catalog)
    await cache.write_series(existing)
    raw_before = await store.get(series_key("s"))

    result = await cache.get_series("s")

    assert result == existing
    assert await store.get(series_key("s")) == raw_before


@pytest.mark.asyncio
async def test_stale_hit_served_when_upstream_fails(store):
    existing = make_series("s", ["e1"], fetched_minutes_ago=120)
    catalog = FakeCatalog(updates=None)
    cache = SeriesCache(store, catalog)
    await cache.write_series(existing)

    assert await cache.get_series("s") == existing


@pytest.mark.asyncio
async def test_update_resolves_new_episodes_in_batches_of_twenty(store):
    existing = make_series("s", ["old"], fetched_minutes_ago=120, newest_days_ago=100)
    new_ids = [f"n{i}" for i in range(45)]
    catalog = FakeCatalog(updates=make_resources(new_ids))
    cache = SeriesCache(store, catalog)
    await cache.write_series(existing)

    result = await cache.get_series("s")

    assert [len(batch) for batch in catalog.resolve_calls] == [20, 20, 5]
    assert len(result.episodes) == 46
    assert result.episodes[-1].id == "old"


@pytest.mark.asyncio
async def test_update_trims_to_byte_budget(store):
    existing = make_series("s", [f"old{i}" for i in range(30)], fetched_minutes_ago=120, newest_days_ago=40)
    budget = series_size_bytes(existing)
    catalog = FakeCatalog(updates=make_resources([f"new{i}" for i in range(10)]))
    cache = SeriesCache(store, catalog, max_bytes=budget)
    await cache.write_series(existing)

    result = await cache.get_series("s")

    assert series_size_bytes(result) <= budget
    assert result.episodes[0].id == "new0"


@pytest.mark.asyncio
async def test_malformed_snapshot_reads_as_absent(store):
    await store.set(series_key("s"), '{"id": "s"')
    cache = SeriesCache(store, FakeCatalog())
    assert await cache.read_series("s") is None


class FailingWriteStore(MemoryStore):
    async def set(self, key, value, ex=None):
        raise StoreError("read-only replica")


@pytest.mark.asyncio
async def test_write_failure_returns_false():
    cache = SeriesCache(FailingWriteStore(), FakeCatalog())
    assert await cache.write_series(make_series("s", ["e1"])) is False
