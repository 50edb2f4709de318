from celery import Celery
from app.core.config import settings
from app.core.keys import EVENT_SERIES_FETCH, EVENT_SERIES_QUEUE_KICK

celery_app = Celery(
    "nrss",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.services.tasks"]
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,
    worker_prefetch_multiplier=1,    # one fetch at a time per worker process
    task_compression='gzip',
    result_compression='gzip',

    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    # RedBeat scheduler configuration
    beat_scheduler='redbeat.schedulers:RedBeatScheduler',
    redbeat_redis_url=settings.redis_url,
    redbeat_key_prefix='nrss:beat:',

    task_routes={
        EVENT_SERIES_FETCH: {'queue': 'series'},
        EVENT_SERIES_QUEUE_KICK: {'queue': 'series'},
    },

    worker_disable_rate_limits=True,

    beat_schedule={
        # Restarts draining after a worker died mid-claim and the claim TTL ran out
        "series-queue-sweep": {
            "task": EVENT_SERIES_QUEUE_KICK,
            "schedule": 60 * 15,
        },
    },
    timezone="UTC",
)
