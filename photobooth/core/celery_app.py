"""
Celery Application Configuration

Configures Celery with:
- Redis broker and result backend
- Job id as task id, so status lookups need nothing but the id
- Late acknowledgment and bounded prefetch for the worker pool
"""

from celery import Celery
from kombu import Queue

from photobooth.core.config import settings

# Placeholder transports keep the app importable in direct mode;
# nothing is enqueued when no broker is configured.
broker_url = settings.REDIS_URL or "memory://"
backend_url = settings.REDIS_URL or "cache+memory://"

celery_app = Celery(
    "photobooth",
    broker=broker_url,
    backend=backend_url,
    include=[
        "photobooth.pipeline.tasks",
    ]
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking - STARTED maps to "processing"
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit

    # Result expiration
    result_expires=settings.RESULT_EXPIRES_SECONDS,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,

    # Queue definitions
    task_default_queue=settings.QUEUE_NAME,
    task_queues=(
        Queue(settings.QUEUE_NAME, routing_key=settings.QUEUE_NAME),
    ),

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Fail fast instead of hanging when the broker goes away
    broker_connection_retry_on_startup=False,
    task_publish_retry_policy={
        "max_retries": 1,
        "interval_start": 0,
        "interval_step": 0.5,
        "interval_max": 1,
    },
    redis_socket_connect_timeout=settings.BROKER_CONNECT_TIMEOUT_SECONDS,
)
