import pytest

from app.core.keys import EVENT_SERIES_QUEUE_KICK, SERIES_QUEUE_ACTIVE, SERIES_QUEUE_KICK
from app.schemas import FetchResult
from app.services.orchestrator import REASON_UNEXPECTED
from app.services.progress import ProgressTracker
from app.services.queue_worker import process_queue_kick
from app.services.steps import StepRunner
from app.services.work_queue import WorkQueue

from conftest import EventRecorder


class FetchRecorder:
    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)

    async def __call__(self, series_id, steps):
        self.calls.append(series_id)
        if series_id in self.fail_for:
            raise RuntimeError("boom")
        return FetchResult(stored=True, episodes=3)


@pytest.fixture
def queue(store):
    return WorkQueue(store)


@pytest.fixture
def progress(store):
    return ProgressTracker(store)


@pytest.mark.asyncio
async def test_empty_queue_processes_nothing(queue, progress, events):
    run_fetch = FetchRecorder()
    outcome = await process_queue_kick(queue=queue, progress=progress, send_event=events, run_fetch=run_fetch)
    assert outcome == {"processed": 0}
    assert run_fetch.calls == []
    assert events.events == []


@pytest.mark.asyncio
async def test_processes_one_item_and_chains_a_kick(queue, progress, events, store):
    for series_id in ("a", "b"):
        await queue.enqueue(series_id)
    await queue.acquire_kick_lock("kick-0")  # the kick that started this invocation
    run_fetch = FetchRecorder()

    outcome = await process_queue_kick(
        queue=queue, progress=progress, send_event=events, run_fetch=run_fetch, kick_token="kick-0"
    )

    assert run_fetch.calls == ["a"]
    assert outcome["series_id"] == "a"
    assert outcome["stored"] is True
    assert outcome["kicked"] is True
    kicks = events.named(EVENT_SERIES_QUEUE_KICK)
    assert len(kicks) == 1
    assert await store.get(SERIES_QUEUE_KICK) == kicks[0]["kick_token"]
    assert await store.get(SERIES_QUEUE_ACTIVE) is None
    assert await queue.position("b") == 1


@pytest.mark.asyncio
async def test_failed_kick_send_frees_the_kick_lock(queue, progress, store):
    for series_id in ("a", "b"):
        await queue.enqueue(series_id)
    events = EventRecorder(ok=False)

    outcome = await process_queue_kick(queue=queue, progress=progress, send_event=events, run_fetch=FetchRecorder())

    assert outcome["stored"] is True
    assert outcome["kicked"] is False
    assert len(events.named(EVENT_SERIES_QUEUE_KICK)) == 1
    assert await store.get(SERIES_QUEUE_KICK) is None


@pytest.mark.asyncio
async def test_kick_without_token_leaves_pending_kick_lock(queue, progress, events, store):
    for series_id in ("a", "b"):
        await queue.enqueue(series_id)
    await queue.acquire_kick_lock("pending")

    outcome = await process_queue_kick(queue=queue, progress=progress, send_event=events, run_fetch=FetchRecorder())

    assert outcome["series_id"] == "a"
    assert outcome["kicked"] is False
    assert events.events == []
    assert await store.get(SERIES_QUEUE_KICK) == "pending"


@pytest.mark.asyncio
async def test_last_item_does_not_chain(queue, progress, events, store):
    await queue.enqueue("a")
    outcome = await process_queue_kick(queue=queue, progress=progress, send_event=events, run_fetch=FetchRecorder())
    assert outcome["kicked"] is False
    assert events.events == []
    assert await store.get(SERIES_QUEUE_KICK) is None


@pytest.mark.asyncio
async def test_chained_kicks_drain_the_queue(queue, progress, events):
    for series_id in ("a", "b", "c"):
        await queue.enqueue(series_id)
    run_fetch = FetchRecorder()

    # Simulate the event channel: every sent kick starts one more invocation
    await process_queue_kick(queue=queue, progress=progress, send_event=events, run_fetch=run_fetch)
    while len(events.events) > 0:
        _, data = events.events.pop()
        await process_queue_kick(
            queue=queue, progress=progress, send_event=events, run_fetch=run_fetch, kick_token=data["kick_token"]
        )

    assert run_fetch.calls == ["a", "b", "c"]
    assert await queue.queue_length() == 0


@pytest.mark.asyncio
async def test_unexpected_failure_marks_failed_and_drops_item(queue, progress, events, store):
    await queue.enqueue("bad")
    await queue.enqueue("good")

    outcome = await process_queue_kick(
        queue=queue, progress=progress, send_event=events, run_fetch=FetchRecorder(fail_for={"bad"})
    )

    assert outcome["reason"] == REASON_UNEXPECTED
    record = await progress.read("bad")
    assert record.status == "failed"
    assert await queue.position("bad") is None
    assert await store.get(SERIES_QUEUE_ACTIVE) is None
    assert outcome["kicked"] is True


@pytest.mark.asyncio
async def test_busy_slot_claims_nothing(queue, progress, events):
    await queue.enqueue("a")
    await queue.enqueue("b")
    await queue.claim_next()

    run_fetch = FetchRecorder()
    outcome = await process_queue_kick(queue=queue, progress=progress, send_event=events, run_fetch=run_fetch)
    assert outcome == {"processed": 0}
    assert run_fetch.calls == []


@pytest.mark.asyncio
async def test_redelivered_kick_replays_claim_and_skips_second_chain(queue, progress, events, store):
    for series_id in ("a", "b"):
        await queue.enqueue(series_id)
    await queue.acquire_kick_lock("kick-1-token")
    run_fetch = FetchRecorder()

    for _ in range(2):
        await process_queue_kick(
            queue=queue,
            progress=progress,
            send_event=events,
            run_fetch=run_fetch,
            steps=StepRunner(store, "kick-1"),
            kick_token="kick-1-token",
        )

    # The replayed claim-next and chain steps do not claim "b" or send another kick
    assert await queue.position("b") == 1
    kicks = events.named(EVENT_SERIES_QUEUE_KICK)
    assert len(kicks) == 1
    # The redelivery only releases the lock it was signalled under, not the chained kick's
    assert await store.get(SERIES_QUEUE_KICK) == kicks[0]["kick_token"]
