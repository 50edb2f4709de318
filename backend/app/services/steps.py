"""
steps.py

Named, memoized steps for fetch jobs. A Celery task may be delivered more
than once (acks_late) or retried after a failure; wrapping each unit of work
in `await steps.run("name", fn)` stores its JSON result under the job id so a
re-run returns the stored value instead of calling upstream again, and the
job resumes from the first step that has not completed.

InlineSteps runs everything directly with no memo (tests, scripts).
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from app.core.keys import step_memo_key
from app.core.store import KeyValueStore, StoreError

logger = logging.getLogger(__name__)


class InlineSteps:
    async def run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await fn()

    async def sleep(self, name: str, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


class StepRunner(InlineSteps):
    """Memoizes step results in the store, keyed by job id and step name."""

    def __init__(self, store: KeyValueStore, job_id: str, ttl_seconds: int = 86400):
        self.store = store
        self.job_id = job_id
        self.ttl_seconds = ttl_seconds

    async def run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        key = step_memo_key(self.job_id, name)
        try:
            cached = await self.store.get(key)
        except StoreError as e:
            logger.warning(f"Step memo read failed for {key}: {e}")
            cached = None
        if cached is not None:
            logger.debug(f"Step {name} replayed from memo ({self.job_id})")
            return json.loads(cached)

        result = await fn()
        try:
            await self.store.set(key, json.dumps(result), ex=self.ttl_seconds)
        except StoreError as e:
            logger.warning(f"Step memo write failed for {key}: {e}")
        return result

    async def sleep(self, name: str, seconds: float) -> None:
        # A completed sleep is memoized like any other step so a resumed job does not wait twice
        key = step_memo_key(self.job_id, name)
        try:
            if await self.store.get(key) is not None:
                return
        except StoreError as e:
            logger.warning(f"Step memo read failed for {key}: {e}")
        await super().sleep(name, seconds)
        try:
            await self.store.set(key, "true", ex=self.ttl_seconds)
        except StoreError as e:
            logger.warning(f"Step memo write failed for {key}: {e}")
