"""
Execution Backends

Where a submitted job runs:

- QueueExecutionBackend: enqueue on the Celery broker, workers run the job
- DirectExecutionBackend: run the pipeline inline in the submitting process

The backend is chosen once at startup by select_execution_backend().
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis
from kombu.exceptions import OperationalError

from photobooth.core.config import Settings
from photobooth.core.exceptions import BrokerUnavailableError, JobTimeoutError, PhotoboothError
from photobooth.core.logging import get_logger
from photobooth.core.storage import LocalStorage
from photobooth.modules.jobs.counters import QueueCounters
from photobooth.modules.jobs.models import (
    ExecutionMode,
    JobPayload,
    JobStatus,
    JobStatusRecord,
    SubmissionOutcome,
)
from photobooth.modules.jobs.store import BrokerJobStatusStore, InMemoryJobStatusStore
from photobooth.pipeline.runner import PhotoJobRunner
from photobooth.pipeline.tasks import process_photo_job

logger = get_logger(__name__)

SUBMIT_MODE_ASYNC = "async"
SUBMIT_MODE_WAIT = "wait"


class ExecutionBackend(ABC):
    """Submit jobs, answer status queries, report health."""

    mode: ExecutionMode

    @abstractmethod
    def submit(self, payload: JobPayload) -> SubmissionOutcome:
        ...

    @abstractmethod
    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        ...

    @abstractmethod
    def health(self) -> Dict[str, Any]:
        ...

    def close(self):
        pass


# =============================================================================
# Direct mode
# =============================================================================

class DirectExecutionBackend(ExecutionBackend):
    """Runs each job inline and records its terminal state in memory."""

    mode = ExecutionMode.DIRECT

    def __init__(self, store: InMemoryJobStatusStore, runner: PhotoJobRunner):
        self.store = store
        self.runner = runner

    def submit(self, payload: JobPayload) -> SubmissionOutcome:
        job_id = payload.job_id
        self.store.create(job_id, JobStatus.PROCESSING)

        with self.store.claim(job_id):
            try:
                result = self.runner.run(payload)
            except PhotoboothError as e:
                record = self.store.transition(job_id, JobStatus.FAILED, error_message=e.message)
            else:
                record = self.store.transition(
                    job_id,
                    JobStatus.COMPLETED,
                    result_image_path=result.result_image_path
                )

        return SubmissionOutcome(
            job_id=job_id,
            status=record.status,
            result_image_url=record.result_image_url,
            error_message=record.error_message
        )

    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        return self.store.get_status(job_id)

    def health(self) -> Dict[str, Any]:
        return {
            "queueEnabled": False,
            "mode": self.mode.value,
            "message": "Queue is disabled - jobs are processed directly",
        }

    def close(self):
        self.runner.close()


# =============================================================================
# Queue mode
# =============================================================================

class QueueExecutionBackend(ExecutionBackend):
    """
    Enqueues jobs on the Celery broker.

    In async submit mode the caller gets `processing` back immediately and
    polls. In wait mode submit() polls the result backend until the job is
    terminal or the poll budget runs out; a timeout is reported to the
    caller only, the job itself keeps running.
    """

    mode = ExecutionMode.QUEUE

    def __init__(
        self,
        store: BrokerJobStatusStore,
        task,
        counters: QueueCounters,
        submit_mode: str = SUBMIT_MODE_ASYNC,
        poll_interval_seconds: float = 1.0,
        poll_max_attempts: int = 300,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.task = task
        self.counters = counters
        self.submit_mode = submit_mode
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_max_attempts = poll_max_attempts
        self.sleep = sleep

    def submit(self, payload: JobPayload) -> SubmissionOutcome:
        job_id = payload.job_id
        self.store.register(job_id)

        try:
            self.task.apply_async(args=[payload.to_message()], task_id=job_id)
        except (OperationalError, redis.RedisError, ConnectionError) as e:
            self.store.forget(job_id)
            raise BrokerUnavailableError(f"Failed to enqueue job: {e}", job_id=job_id)

        logger.info("job_enqueued", job_id=job_id, submit_mode=self.submit_mode)

        if self.submit_mode == SUBMIT_MODE_WAIT:
            return self._wait_for_result(job_id)
        return SubmissionOutcome(job_id=job_id, status=JobStatus.PROCESSING)

    def _wait_for_result(self, job_id: str) -> SubmissionOutcome:
        for attempt in range(1, self.poll_max_attempts + 1):
            try:
                record = self.store.get_status(job_id)
            except BrokerUnavailableError as e:
                logger.error("job_wait_poll_failed", job_id=job_id, attempt=attempt, error=e.message)
                return SubmissionOutcome(job_id=job_id, status=JobStatus.FAILED, error_message=e.message)

            if record is not None and record.status.is_terminal:
                return SubmissionOutcome(
                    job_id=job_id,
                    status=record.status,
                    result_image_url=record.result_image_url,
                    error_message=record.error_message
                )
            self.sleep(self.poll_interval_seconds)

        budget = self.poll_interval_seconds * self.poll_max_attempts
        timeout = JobTimeoutError(f"Job processing timed out after {budget:g} seconds", job_id=job_id)
        logger.warning("job_wait_timed_out", job_id=job_id, attempts=self.poll_max_attempts)
        return SubmissionOutcome(job_id=job_id, status=JobStatus.FAILED, error_message=timeout.message)

    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        return self.store.get_status(job_id)

    def health(self) -> Dict[str, Any]:
        return {
            "queueEnabled": True,
            "mode": self.mode.value,
            "redis": "connected",
            "metrics": self.counters.snapshot(),
        }

    def close(self):
        self.store.redis.close()


# =============================================================================
# Selection
# =============================================================================

def build_direct_backend(
    settings: Settings,
    storage: LocalStorage,
    runner: PhotoJobRunner,
    status_store: Optional[InMemoryJobStatusStore] = None
) -> DirectExecutionBackend:
    if status_store is None:
        status_store = InMemoryJobStatusStore(storage, ttl_seconds=settings.JOB_STATUS_TTL_SECONDS)
    return DirectExecutionBackend(status_store, runner)


def select_execution_backend(
    settings: Settings,
    storage: LocalStorage,
    runner: PhotoJobRunner,
    status_store: Optional[InMemoryJobStatusStore] = None,
    redis_factory: Optional[Callable[..., redis.Redis]] = None,
    task=None
) -> ExecutionBackend:
    """
    Pick the execution backend once at startup.

    No REDIS_URL means direct mode. A configured broker that does not answer
    PING within BROKER_CONNECT_TIMEOUT_SECONDS also means direct mode.
    """
    if not settings.broker_configured:
        logger.info("execution_mode_selected", mode=ExecutionMode.DIRECT.value, reason="no_broker_configured")
        return build_direct_backend(settings, storage, runner, status_store)

    redis_factory = redis_factory or redis.Redis.from_url
    client = redis_factory(
        settings.REDIS_URL,
        socket_connect_timeout=settings.BROKER_CONNECT_TIMEOUT_SECONDS,
        socket_timeout=settings.BROKER_CONNECT_TIMEOUT_SECONDS
    )

    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(
            "execution_mode_selected",
            mode=ExecutionMode.DIRECT.value,
            reason="broker_unreachable",
            error=str(e)
        )
        client.close()
        return build_direct_backend(settings, storage, runner, status_store)

    task = task or process_photo_job

    logger.info("execution_mode_selected", mode=ExecutionMode.QUEUE.value, queue=settings.QUEUE_NAME)
    return QueueExecutionBackend(
        store=BrokerJobStatusStore(
            client,
            storage,
            result_lookup=task.AsyncResult,
            marker_ttl_seconds=settings.RESULT_EXPIRES_SECONDS
        ),
        task=task,
        counters=QueueCounters(client, settings.QUEUE_NAME),
        submit_mode=settings.JOB_SUBMIT_MODE,
        poll_interval_seconds=settings.QUEUE_POLL_INTERVAL_SECONDS,
        poll_max_attempts=settings.QUEUE_POLL_MAX_ATTEMPTS
    )
