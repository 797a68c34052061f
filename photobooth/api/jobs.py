"""
Jobs Endpoints

POST /api/jobs          - Upload a photo and submit a processing job
GET  /api/jobs/{job_id} - Poll the status of a job
"""

import asyncio
import uuid
from concurrent.futures import Executor
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError, field_validator

from photobooth.api.dependencies import get_dispatcher, get_pipeline_executor
from photobooth.core.config import settings
from photobooth.core.exceptions import JobNotFoundError, ValidationError
from photobooth.core.logging import get_logger
from photobooth.core.storage import LocalStorage, get_storage
from photobooth.modules.jobs.dispatcher import JobDispatcher
from photobooth.modules.jobs.models import JobMode, JobPayload, JobStatus, SubmissionOutcome

MAX_UPLOAD_SIZE_MB = settings.MAX_UPLOAD_SIZE_BYTES // (1024 * 1024)

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request Schemas
# =============================================================================

class JobSubmission(BaseModel):
    """Form fields of a job submission."""

    model_config = ConfigDict(validate_default=True)

    mode: Optional[str] = None
    background_id: Optional[str] = None
    user_session_id: Optional[str] = None

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: Optional[str]) -> str:
        if v not in (JobMode.STADIUM.value, JobMode.CAPTAIN.value):
            raise ValueError('Mode must be "stadium" or "captain"')
        return v

    @field_validator("background_id")
    @classmethod
    def validate_background_id(cls, v: Optional[str]) -> str:
        if not v:
            raise ValueError("backgroundId is required")
        # Catalog lookups join this into a path
        if any(sep in v for sep in ("/", "\\")) or v.startswith("."):
            raise ValueError("backgroundId is invalid")
        return v

    @field_validator("user_session_id")
    @classmethod
    def empty_session_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


def parse_submission(**fields) -> JobSubmission:
    try:
        return JobSubmission(**fields)
    except PydanticValidationError as e:
        error = e.errors()[0]
        reason = error.get("ctx", {}).get("error")
        raise ValidationError(str(reason) if reason else error["msg"])


async def read_photo(photo: Optional[UploadFile]) -> bytes:
    if photo is None or not photo.filename:
        raise ValidationError("Photo file is required")
    if not (photo.content_type or "").startswith("image/"):
        raise ValidationError("Only image files are allowed")

    # Read one byte past the limit and no further
    data = await photo.read(settings.MAX_UPLOAD_SIZE_BYTES + 1)
    if len(data) > settings.MAX_UPLOAD_SIZE_BYTES:
        raise ValidationError(f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB")
    return data


def submission_response(outcome: SubmissionOutcome, user_session_id: Optional[str]) -> JSONResponse:
    if outcome.is_pending:
        status_code = 202
        body = {"jobId": outcome.job_id, "status": JobStatus.PROCESSING.value}
    elif outcome.status == JobStatus.COMPLETED:
        status_code = 200
        body = {"jobId": outcome.job_id, "status": outcome.status.value}
    else:
        status_code = 500
        body = {"jobId": outcome.job_id, "status": JobStatus.FAILED.value}

    if user_session_id:
        body["userSessionId"] = user_session_id
    if status_code == 200:
        body["userImageUrl"] = outcome.result_image_url
    elif status_code == 500:
        body["errorMessage"] = outcome.error_message

    return JSONResponse(status_code=status_code, content=body)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("")
async def create_job(
    photo: Optional[UploadFile] = File(None),
    mode: Optional[str] = Form(None),
    backgroundId: Optional[str] = Form(None),
    userSessionId: Optional[str] = Form(None),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
    storage: LocalStorage = Depends(get_storage),
    executor: Executor = Depends(get_pipeline_executor)
):
    """
    Submit a photo for processing.

    Queue mode answers 202 right away and the client polls the status
    endpoint. Direct mode (and the queue wait mode) answers once the job is
    finished: 200 with the image URL, or 500 with the failure reason.
    """
    data = await read_photo(photo)
    submission = parse_submission(mode=mode, background_id=backgroundId, user_session_id=userSessionId)

    job_id = str(uuid.uuid4())
    input_path = await asyncio.to_thread(storage.save_upload, job_id, data)

    payload = JobPayload(
        job_id=job_id,
        mode=JobMode(submission.mode),
        background_id=submission.background_id,
        input_image_path=str(input_path),
        user_session_id=submission.user_session_id
    )
    logger.info(
        "job_submitted",
        job_id=job_id,
        mode=payload.mode.value,
        background_id=payload.background_id,
        upload_bytes=len(data),
        execution_mode=dispatcher.mode.value
    )

    loop = asyncio.get_running_loop()
    outcome = await loop.run_in_executor(executor, dispatcher.submit, payload)
    return submission_response(outcome, submission.user_session_id)


@router.get("/{job_id}")
async def get_job_status(job_id: str, dispatcher: JobDispatcher = Depends(get_dispatcher)):
    """Current status of a job; 404 once it is unknown or expired."""
    record = await asyncio.to_thread(dispatcher.get_status, job_id)
    if record is None:
        raise JobNotFoundError.for_job(job_id)
    return record.to_response()
