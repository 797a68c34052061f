"""
Job Models

Payload, result and status types shared by both execution modes.
Wire and broker representations use camelCase field names.
"""

import time
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobMode(str, Enum):
    """Booth experience selected by the user."""
    STADIUM = "stadium"
    CAPTAIN = "captain"


class JobStatus(str, Enum):
    """Job lifecycle states. Transitions only move forward."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_transition_to(self, target: "JobStatus") -> bool:
        if self.is_terminal:
            return False
        return target.rank > self.rank


_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class ExecutionMode(str, Enum):
    """Where submitted jobs run."""
    QUEUE = "queue-based"
    DIRECT = "direct-processing"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobPayload(CamelModel):
    """Everything a worker needs to run one job. Immutable once created."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str
    mode: JobMode
    background_id: str
    input_image_path: str
    user_session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # Epoch seconds; the worker runs in another process, so no monotonic clock
    start_time: float = Field(default_factory=time.time)

    def to_message(self) -> Dict[str, Any]:
        """JSON-safe form handed to the broker."""
        return self.model_dump(mode="json", by_alias=True)


class JobResult(CamelModel):
    """Produced exactly once per successful job."""
    result_image_path: str

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class JobStatusRecord(CamelModel):
    """Status of one job as reported to pollers."""
    job_id: str
    status: JobStatus
    result_image_url: Optional[str] = None
    error_message: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "jobId": self.job_id,
            "status": self.status.value,
            "errorMessage": self.error_message,
        }
        if self.result_image_url:
            body["resultImageUrl"] = self.result_image_url
        return body


class SubmissionOutcome(CamelModel):
    """What the dispatcher tells the submitter."""
    job_id: str
    status: JobStatus
    result_image_url: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return not self.status.is_terminal
