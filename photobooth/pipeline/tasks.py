"""
Celery Tasks for the Photo Pipeline

One task per job, keyed by the job id. The return value is the job result
(broker-native) and a raised exception is the job's failure reason. No
task-level retries: only the enhancement call retries, inside the pipeline.
"""

from typing import Any, Dict, Optional

import redis

from photobooth.core.celery_app import celery_app
from photobooth.core.config import settings
from photobooth.core.exceptions import PhotoboothError
from photobooth.core.logging import clear_job_context, get_logger, set_job_context
from photobooth.modules.jobs.counters import QueueCounters
from photobooth.modules.jobs.models import JobPayload
from photobooth.pipeline.runner import PhotoJobRunner

logger = get_logger(__name__)

# Built once per worker process
_runner: Optional[PhotoJobRunner] = None
_counters: Optional[QueueCounters] = None


def get_runner() -> PhotoJobRunner:
    global _runner
    if _runner is None:
        _runner = PhotoJobRunner.from_settings()
    return _runner


def get_queue_counters() -> Optional[QueueCounters]:
    global _counters
    if _counters is None and settings.broker_configured:
        _counters = QueueCounters(redis.Redis.from_url(settings.REDIS_URL), settings.QUEUE_NAME)
    return _counters


@celery_app.task(
    bind=True,
    name="photobooth.pipeline.tasks.process_photo_job",
    max_retries=0,
    acks_late=True
)
def process_photo_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Run the full pipeline for one queued job.

    Args:
        payload: JobPayload in its camelCase message form

    Returns:
        {"resultImagePath": ...}
    """
    job = JobPayload.model_validate(payload)
    set_job_context(job.job_id, "worker")

    counters = get_queue_counters()
    if counters:
        counters.job_started()

    succeeded = False
    try:
        logger.info("task_photo_job_started", task_id=self.request.id)

        result = get_runner().run(job)
        succeeded = True

        logger.info("task_photo_job_completed", result_image_path=result.result_image_path)
        return result.to_message()

    except PhotoboothError as e:
        logger.error("task_photo_job_failed", error=e.message, failed_stage=e.stage)
        raise

    finally:
        if counters:
            counters.job_finished(succeeded)
        clear_job_context()
