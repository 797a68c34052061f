"""
API Router Module

Job endpoints are prefixed with /api/; health and metrics sit at the root.
"""

from fastapi import APIRouter

from photobooth.api.email import router as email_router
from photobooth.api.health import router as health_router
from photobooth.api.jobs import router as jobs_router

api_router = APIRouter(prefix="/api")

api_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_router.include_router(email_router, prefix="/email", tags=["email"])

__all__ = ["api_router", "health_router"]
