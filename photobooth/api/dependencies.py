"""
API Dependencies

FastAPI dependency providers for the route handlers.
"""

from concurrent.futures import Executor

from fastapi import Depends, Request

from photobooth.core.storage import LocalStorage, get_storage
from photobooth.modules.email.service import EmailService
from photobooth.modules.jobs.dispatcher import JobDispatcher


def get_dispatcher(request: Request) -> JobDispatcher:
    """The dispatcher built by the application lifespan."""
    return request.app.state.dispatcher


def get_pipeline_executor(request: Request) -> Executor:
    """Thread pool for job submissions, separate from the loop's default executor."""
    return request.app.state.pipeline_executor


def get_email_service(storage: LocalStorage = Depends(get_storage)) -> EmailService:
    return EmailService.from_settings(storage)
