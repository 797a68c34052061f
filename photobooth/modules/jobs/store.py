"""
Job Status Stores

Two interchangeable status backends behind one query interface:

- BrokerJobStatusStore: derives status from Celery task state (queue mode)
- InMemoryJobStatusStore: explicit records written by the inline pipeline
  (direct mode), swept periodically so memory stays bounded

Exactly one is active per process; callers only rely on get_status().
"""

import asyncio
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

import redis
from celery.result import AsyncResult

from photobooth.core.exceptions import (
    BrokerUnavailableError,
    DuplicateJobError,
    InvalidTransitionError,
    JobAlreadyRunningError,
    JobNotFoundError,
)
from photobooth.core.logging import get_logger
from photobooth.core.storage import LocalStorage
from photobooth.modules.jobs.models import JobStatus, JobStatusRecord

logger = get_logger(__name__)


class JobStatusStore(ABC):
    """Query side shared by both variants."""

    @abstractmethod
    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        """Current status of a job, or None if the job is unknown."""


# =============================================================================
# In-memory variant (direct mode)
# =============================================================================

@dataclass
class _JobEntry:
    job_id: str
    status: JobStatus
    created_at: float
    result_image_path: Optional[str] = None
    error_message: Optional[str] = None


class InMemoryJobStatusStore(JobStatusStore):
    """
    Thread-safe job status map.

    All reads and writes go through one lock. Execution exclusivity is a
    separate per-job lock taken with claim(), so a long-running job never
    blocks status polling for other jobs.
    """

    def __init__(
        self,
        storage: LocalStorage,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic
    ):
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, _JobEntry] = {}
        self._claims: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def create(self, job_id: str, status: JobStatus = JobStatus.QUEUED) -> JobStatusRecord:
        if status.is_terminal:
            raise InvalidTransitionError(
                f"Job {job_id} cannot be created in terminal state {status.value}",
                job_id=job_id
            )
        with self._lock:
            if job_id in self._entries:
                raise DuplicateJobError(f"Job {job_id} already exists", job_id=job_id)
            entry = _JobEntry(job_id=job_id, status=status, created_at=self.clock())
            self._entries[job_id] = entry
            return self._to_record(entry)

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        result_image_path: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> JobStatusRecord:
        """Move a job forward. Backward moves and moves out of a terminal state raise."""
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                raise JobNotFoundError.for_job(job_id)
            if not entry.status.can_transition_to(status):
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {entry.status.value} to {status.value}",
                    job_id=job_id
                )
            entry.status = status
            if result_image_path is not None:
                entry.result_image_path = result_image_path
            if error_message is not None:
                entry.error_message = error_message
            return self._to_record(entry)

    @contextmanager
    def claim(self, job_id: str) -> Iterator[None]:
        """Hold the execution right for a job; a second concurrent claim raises."""
        with self._lock:
            claim_lock = self._claims.setdefault(job_id, threading.Lock())

        if not claim_lock.acquire(blocking=False):
            raise JobAlreadyRunningError(f"Job {job_id} is already being processed", job_id=job_id)
        try:
            yield
        finally:
            claim_lock.release()

    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        with self._lock:
            entry = self._entries.get(job_id)
            return self._to_record(entry) if entry else None

    def sweep(self) -> int:
        """Evict entries created more than ttl_seconds ago. Returns the eviction count."""
        cutoff = self.clock() - self.ttl_seconds
        with self._lock:
            expired = [job_id for job_id, entry in self._entries.items() if entry.created_at < cutoff]
            for job_id in expired:
                del self._entries[job_id]
                claim_lock = self._claims.get(job_id)
                if claim_lock is not None and not claim_lock.locked():
                    del self._claims[job_id]
        return len(expired)

    async def run_sweeper(self, interval_seconds: float):
        """Sweep forever at a fixed interval. Cancel the task to stop it."""
        while True:
            await asyncio.sleep(interval_seconds)
            evicted = self.sweep()
            if evicted:
                logger.info("job_status_sweep", evicted=evicted, remaining=len(self))

    def _to_record(self, entry: _JobEntry) -> JobStatusRecord:
        result_image_url = None
        if entry.status == JobStatus.COMPLETED and entry.result_image_path:
            result_image_url = self.storage.static_image_url(entry.job_id)
        return JobStatusRecord(
            job_id=entry.job_id,
            status=entry.status,
            result_image_url=result_image_url,
            error_message=entry.error_message
        )


# =============================================================================
# Broker-backed variant (queue mode)
# =============================================================================

CELERY_STATE_MAP = {
    "PENDING": JobStatus.QUEUED,
    "RECEIVED": JobStatus.QUEUED,
    "RETRY": JobStatus.QUEUED,
    "STARTED": JobStatus.PROCESSING,
    "SUCCESS": JobStatus.COMPLETED,
    "FAILURE": JobStatus.FAILED,
}

MARKER_KEY_PREFIX = "photobooth:job"


class BrokerJobStatusStore(JobStatusStore):
    """
    Status derived from the Celery result backend.

    Celery reports unknown task ids as PENDING, so submissions are registered
    with a Redis marker; ids without a marker are reported as not found.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        storage: LocalStorage,
        result_lookup: Callable[[str], AsyncResult],
        marker_ttl_seconds: int = 86400
    ):
        self.redis = redis_client
        self.storage = storage
        self.result_lookup = result_lookup
        self.marker_ttl_seconds = marker_ttl_seconds

    def _marker(self, job_id: str) -> str:
        return f"{MARKER_KEY_PREFIX}:{job_id}"

    def register(self, job_id: str):
        """Record a submission. A job id can only be registered once."""
        try:
            created = self.redis.set(self._marker(job_id), "1", nx=True, ex=self.marker_ttl_seconds)
        except redis.RedisError as e:
            raise BrokerUnavailableError(f"Broker unavailable: {e}", job_id=job_id)
        if not created:
            raise DuplicateJobError(f"Job {job_id} already exists", job_id=job_id)

    def forget(self, job_id: str):
        """Drop the marker of a submission that never reached the broker."""
        try:
            self.redis.delete(self._marker(job_id))
        except redis.RedisError as e:
            logger.warning("job_marker_delete_failed", job_id=job_id, error=str(e))

    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        try:
            if not self.redis.exists(self._marker(job_id)):
                return None
            result = self.result_lookup(job_id)
            state = result.state
        except redis.RedisError as e:
            raise BrokerUnavailableError(f"Broker unavailable: {e}", job_id=job_id)

        status = CELERY_STATE_MAP.get(state, JobStatus.QUEUED)
        record = JobStatusRecord(job_id=job_id, status=status)

        if status == JobStatus.COMPLETED:
            value = result.result
            if isinstance(value, dict) and value.get("resultImagePath"):
                record.result_image_url = self.storage.static_image_url(job_id)

        elif status == JobStatus.FAILED:
            reason = result.result
            record.error_message = str(reason) if reason else "Unknown error"

        return record
