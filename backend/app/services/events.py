"""
events.py

Fire-and-forget trigger channel. Events are Celery tasks named after the
event ("nrss/series.fetch", "nrss/series.queue.kick"); delivery is
at-least-once, consumers are idempotent.
"""
import logging
from typing import Any, Dict, Optional

from kombu.exceptions import OperationalError

from app.core.celery_app import celery_app

logger = logging.getLogger(__name__)


async def send_event(name: str, data: Optional[Dict[str, Any]] = None) -> bool:
    """Publish an event. Returns False (and logs) when the broker is unreachable."""
    try:
        celery_app.send_task(name, kwargs=data or {})
    except OperationalError as e:
        logger.warning(f"Event send failed for {name}: {e}")
        return False
    logger.debug(f"Sent event {name} {data or {}}")
    return True
