"""
rate_limit.py

Upstream pacing helpers for the NRK API: per-request delay with jitter and
exponential backoff on HTTP 429 responses.
"""
import asyncio
import logging
import random
from typing import Any, Optional

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Exception raised when the upstream answers 429 Too Many Requests."""

    def __init__(self, message: str, service: str = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.service = service
        self.retry_after = retry_after


def delay_with_jitter(base_ms: int, jitter: float) -> int:
    """base_ms +/- base_ms*jitter, uniformly. 0 when base_ms <= 0."""
    if base_ms <= 0:
        return 0
    spread = base_ms * min(1.0, max(0.0, jitter))
    return max(0, round(base_ms + (random.random() * 2 - 1) * spread))


async def sleep_ms(ms: int) -> None:
    if ms > 0:
        await asyncio.sleep(ms / 1000)


async def with_backoff(func, *args, max_retries: int = 5, service: str = None, **kwargs) -> Any:
    """Execute function with exponential backoff on rate limit errors."""
    delay = 1
    last_exception = None

    for attempt in range(max_retries):
        try:
            return await func(*args, **kwargs)

        except RateLimitExceeded as e:
            last_exception = e
            wait = e.retry_after if e.retry_after else delay
            logger.warning(f"Rate limited by {service or 'upstream'} on attempt {attempt + 1}/{max_retries}, sleeping {wait}s")
            await asyncio.sleep(wait)
            delay = min(delay * 2, 30)  # Cap at 30 seconds

    raise last_exception or Exception(f"Max retries ({max_retries}) exceeded")
