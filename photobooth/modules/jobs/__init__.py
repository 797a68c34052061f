"""
Jobs Module

Job models, status stores and the execution dispatcher.
"""

from photobooth.modules.jobs.models import (
    ExecutionMode,
    JobMode,
    JobPayload,
    JobResult,
    JobStatus,
    JobStatusRecord,
    SubmissionOutcome,
)

__all__ = [
    "ExecutionMode",
    "JobMode",
    "JobPayload",
    "JobResult",
    "JobStatus",
    "JobStatusRecord",
    "SubmissionOutcome",
]
