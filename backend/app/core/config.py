import os
from pydantic_settings import BaseSettings



class Settings(BaseSettings):
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    # "redis" for a real Redis (local or hosted over rediss://), "memory" for single-process dev/tests
    store_backend: str = os.getenv("STORE_BACKEND", "redis")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    admin_secret: str = os.getenv("ADMIN_SECRET", "")

    # Series cache
    sync_interval_hours: float = float(os.getenv("SYNC_INTERVAL_HOURS", "1"))
    max_series_bytes: int = int(os.getenv("MAX_SERIES_BYTES", "65536"))

    # Coordination TTLs (seconds)
    series_fetch_lock_ttl_sec: int = int(os.getenv("SERIES_FETCH_LOCK_TTL_SEC", "1800"))
    series_progress_ttl_sec: int = int(os.getenv("SERIES_PROGRESS_TTL_SEC", "3600"))
    series_queue_claim_ttl_sec: int = int(os.getenv("SERIES_QUEUE_CLAIM_TTL_SEC", "1800"))
    series_queue_kick_lock_ttl_sec: int = int(os.getenv("SERIES_QUEUE_KICK_LOCK_TTL_SEC", "60"))
    step_memo_ttl_sec: int = int(os.getenv("STEP_MEMO_TTL_SEC", "86400"))

    # Upstream NRK catalog
    nrk_api_base_url: str = os.getenv("NRK_API_BASE_URL", "https://psapi.nrk.no")
    nrk_fetch_batch_size: int = int(os.getenv("NRK_FETCH_BATCH_SIZE", "10"))
    nrk_fetch_batch_delay_ms: int = int(os.getenv("NRK_FETCH_BATCH_DELAY_MS", "10000"))
    nrk_fetch_delay_ms: int = int(os.getenv("NRK_FETCH_DELAY_MS", "0"))
    nrk_fetch_delay_jitter: float = float(os.getenv("NRK_FETCH_DELAY_JITTER", "0.5"))
    nrk_update_batch_size: int = int(os.getenv("NRK_UPDATE_BATCH_SIZE", "20"))
    nrk_timeout_seconds: int = int(os.getenv("NRK_TIMEOUT_SECONDS", "10"))

    # Read path: "queue" enqueues misses for the backfill worker, "direct" triggers a locked fetch
    cache_miss_strategy: str = os.getenv("CACHE_MISS_STRATEGY", "queue")

    # Backfill script
    backfill_delay_ms: int = int(os.getenv("BACKFILL_DELAY_MS", "10000"))
    backfill_delay_jitter: float = float(os.getenv("BACKFILL_DELAY_JITTER", "0.5"))
    backfill_skip_existing: bool = os.getenv("BACKFILL_SKIP_EXISTING", "true").lower() != "false"
    backfill_priority_only: bool = os.getenv("BACKFILL_PRIORITY_ONLY", "0") == "1"
    backfill_priority_file: str = os.getenv("BACKFILL_PRIORITY_FILE", "data/priority-series.json")

    @property
    def batch_size(self) -> int:
        return self.nrk_fetch_batch_size if self.nrk_fetch_batch_size > 0 else 10

    @property
    def batch_delay_seconds(self) -> float:
        return self.nrk_fetch_batch_delay_ms / 1000 if self.nrk_fetch_batch_delay_ms > 0 else 0.0

    @property
    def fetch_delay_jitter(self) -> float:
        return min(1.0, max(0.0, self.nrk_fetch_delay_jitter))

settings = Settings()
