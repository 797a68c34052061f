"""
Worker Entrypoint

    python -m photobooth.core.worker

Starts the Celery worker pool for the photo processing queue. Without a
configured broker there is nothing to consume, so the process exits
cleanly; an unreachable broker is a startup failure.

Celery handles SIGTERM/SIGINT with a warm shutdown: stop consuming, let
in-flight jobs finish, then exit.
"""

import sys
from typing import List, Optional

import redis

from photobooth.core.celery_app import celery_app
from photobooth.core.config import settings
from photobooth.core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def worker_argv(concurrency: Optional[int] = None) -> List[str]:
    return [
        "worker",
        f"--concurrency={concurrency or settings.WORKER_CONCURRENCY}",
        "-Q",
        settings.QUEUE_NAME,
        f"--loglevel={settings.LOG_LEVEL}",
    ]


def check_broker() -> bool:
    client = redis.Redis.from_url(
        settings.REDIS_URL,
        socket_connect_timeout=settings.BROKER_CONNECT_TIMEOUT_SECONDS,
        socket_timeout=settings.BROKER_CONNECT_TIMEOUT_SECONDS
    )
    try:
        client.ping()
        return True
    except redis.RedisError as e:
        logger.error("worker_broker_unreachable", error=str(e))
        return False
    finally:
        client.close()


def main() -> int:
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)

    if not settings.broker_configured:
        logger.info("worker_not_started", reason="REDIS_URL is not set, jobs are processed directly by the API")
        return 0

    if not check_broker():
        return 1

    logger.info(
        "worker_starting",
        queue=settings.QUEUE_NAME,
        concurrency=settings.WORKER_CONCURRENCY
    )
    celery_app.worker_main(worker_argv())
    logger.info("worker_stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
