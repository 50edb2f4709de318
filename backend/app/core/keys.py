"""Store key names and event names. Single source of truth for the coordination layout."""

SERIES_PREFIX = "series:"
SERIES_LOCK_PREFIX = "series-lock:"
SERIES_PROGRESS_PREFIX = "series-progress:"
SERIES_QUEUE = "series-queue"
SERIES_QUEUE_ACTIVE = "series-queue-active"
SERIES_QUEUE_KICK = "series-queue-kick"
STEP_MEMO_PREFIX = "step-memo:"

EVENT_SERIES_FETCH = "nrss/series.fetch"
EVENT_SERIES_QUEUE_KICK = "nrss/series.queue.kick"


def series_key(series_id: str) -> str:
    return f"{SERIES_PREFIX}{series_id}"


def series_lock_key(series_id: str) -> str:
    return f"{SERIES_LOCK_PREFIX}{series_id}"


def series_progress_key(series_id: str) -> str:
    return f"{SERIES_PROGRESS_PREFIX}{series_id}"


def step_memo_key(job_id: str, step: str) -> str:
    return f"{STEP_MEMO_PREFIX}{job_id}:{step}"
