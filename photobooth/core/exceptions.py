"""
Global Exception Handling

Custom exception taxonomy for the job pipeline and the FastAPI handlers
that turn it into structured JSON responses.

Every exception here must be constructible from its message alone so the
Celery result backend can rebuild it on the polling side.
"""

import traceback
from typing import Optional, Dict, Any
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from photobooth.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class PhotoboothError(Exception):
    """Base exception for the photobooth service."""

    code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(PhotoboothError):
    """Malformed or missing request fields, bad file type or size."""
    code = 400


class JobNotFoundError(PhotoboothError):
    """No status is known for the requested job id."""
    code = 404

    @classmethod
    def for_job(cls, job_id: str) -> "JobNotFoundError":
        return cls(f"Job with id {job_id} not found", job_id=job_id)


class ProcessingError(PhotoboothError):
    """Image pipeline failure. Never retried."""
    code = 500


class AssetNotFoundError(ProcessingError):
    """No backdrop file exists for the requested background id."""


class DecodeError(ProcessingError):
    """An image could not be decoded or its dimensions read."""


class ExternalServiceError(PhotoboothError):
    """The enhancement service failed on every attempt."""
    code = 502

    def __init__(
        self,
        message: str,
        service: str = "gemini",
        attempts: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.service = service
        self.attempts = attempts
        self.details["service"] = service
        if attempts is not None:
            self.details["attempts"] = attempts


class JobTimeoutError(PhotoboothError):
    """The blocking-wait facade ran out of poll attempts."""
    code = 504


class BrokerUnavailableError(PhotoboothError):
    """The message broker could not be reached."""
    code = 503


class InvalidTransitionError(PhotoboothError):
    """A status change that would move a job backwards or out of a terminal state."""
    code = 409


class DuplicateJobError(PhotoboothError):
    """A job id was registered twice."""
    code = 409


class JobAlreadyRunningError(PhotoboothError):
    """A second executor tried to claim a job that is already running."""
    code = 409


class EmailDeliveryError(PhotoboothError):
    """The final image could not be emailed."""
    code = 500


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"message": message}
    if details:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(PhotoboothError)
    async def photobooth_exception_handler(request: Request, exc: PhotoboothError):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "photobooth_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            job_id=exc.job_id,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content=_error_body(exc.message, exc.details)
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = ", ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        logger.warning("request_validation_failed", errors=errors, path=str(request.url.path))

        return JSONResponse(
            status_code=400,
            content=_error_body(f"Validation error: {errors}")
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content=_error_body("Internal server error")
        )
