"""
Health and Metrics Endpoints

GET /health       - Liveness
GET /health/queue - Execution mode and queue counters
GET /metrics      - Prometheus metrics
"""

import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse

from photobooth.api.dependencies import get_dispatcher
from photobooth.core.config import settings
from photobooth.core.logging import get_logger
from photobooth.core.metrics import get_metrics, get_metrics_content_type
from photobooth.modules.jobs.dispatcher import JobDispatcher

logger = get_logger(__name__)
router = APIRouter()


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.APP_VERSION
    }


@router.get("/health/queue")
async def queue_health(dispatcher: JobDispatcher = Depends(get_dispatcher)):
    try:
        return await asyncio.to_thread(dispatcher.health)
    except Exception as e:
        logger.error("queue_health_check_failed", error=str(e))
        return JSONResponse(status_code=500, content={"queueEnabled": False, "error": str(e)})


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - pipeline_latency_seconds (per stage)
    - enhancement_api_calls_total
    - photobooth_jobs_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
