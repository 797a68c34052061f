"""
Job Dispatcher

Front door for submissions and status queries. Wraps the active execution
backend and, when the broker disappears mid-flight, switches to direct
processing for the rest of the process lifetime.
"""

import threading
from typing import Any, Callable, Dict, Optional

from photobooth.core.config import settings
from photobooth.core.exceptions import BrokerUnavailableError
from photobooth.core.logging import get_logger
from photobooth.core.metrics import set_app_info
from photobooth.modules.jobs.backends import ExecutionBackend
from photobooth.modules.jobs.models import ExecutionMode, JobPayload, JobStatusRecord, SubmissionOutcome

logger = get_logger(__name__)


class JobDispatcher:
    """
    Routes jobs to the active backend.

    The downgrade is one-way and fires at most once: concurrent submissions
    that all hit a dead broker share the single direct backend built by the
    first of them.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        fallback_factory: Optional[Callable[[], ExecutionBackend]] = None
    ):
        self._backend = backend
        self._fallback_factory = fallback_factory
        self._retired: Optional[ExecutionBackend] = None
        self._lock = threading.Lock()

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    @property
    def mode(self) -> ExecutionMode:
        return self._backend.mode

    @property
    def downgraded(self) -> bool:
        return self._retired is not None

    def submit(self, payload: JobPayload) -> SubmissionOutcome:
        backend = self._backend
        try:
            return backend.submit(payload)
        except BrokerUnavailableError as e:
            if self._fallback_factory is None or backend.mode != ExecutionMode.QUEUE:
                raise
            return self._downgrade(backend, e).submit(payload)

    def _downgrade(self, failed: ExecutionBackend, error: BrokerUnavailableError) -> ExecutionBackend:
        with self._lock:
            if self._backend is failed:
                self._backend = self._fallback_factory()
                self._retired = failed
                logger.warning(
                    "execution_mode_downgraded",
                    from_mode=failed.mode.value,
                    to_mode=self._backend.mode.value,
                    error=error.message
                )
                set_app_info(settings.APP_VERSION, settings.ENVIRONMENT, self._backend.mode.value)
            return self._backend

    def get_status(self, job_id: str) -> Optional[JobStatusRecord]:
        return self._backend.get_status(job_id)

    def health(self) -> Dict[str, Any]:
        return self._backend.health()

    def close(self):
        self._backend.close()
        if self._retired is not None:
            self._retired.close()
