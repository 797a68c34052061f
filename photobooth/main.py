"""
Photobooth Job Pipeline - Main Application

FastAPI application with:
- Job submission and status polling (/api/jobs)
- Queue-based (Celery on Redis) or direct in-process execution
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
"""

import asyncio
import contextlib
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from photobooth.api import api_router, health_router
from photobooth.core.config import settings
from photobooth.core.exceptions import register_exception_handlers
from photobooth.core.logging import get_logger, setup_logging
from photobooth.core.metrics import http_request_duration_seconds, http_requests_total, set_app_info
from photobooth.core.storage import STATIC_URL_PREFIX, get_storage
from photobooth.modules.jobs.backends import DirectExecutionBackend, select_execution_backend
from photobooth.modules.jobs.dispatcher import JobDispatcher
from photobooth.modules.jobs.store import InMemoryJobStatusStore
from photobooth.pipeline.runner import PhotoJobRunner


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - startup and shutdown."""
    startup_start = time.time()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    storage = get_storage()
    storage.ensure_directories()

    runner = PhotoJobRunner.from_settings(storage)
    status_store = InMemoryJobStatusStore(storage, ttl_seconds=settings.JOB_STATUS_TTL_SECONDS)
    # Submissions run here; status and health reads stay on the default executor
    app.state.pipeline_executor = ThreadPoolExecutor(
        max_workers=settings.PIPELINE_MAX_WORKERS,
        thread_name_prefix="pipeline"
    )

    # Mode is chosen once; a broker lost later downgrades through the dispatcher
    backend = await asyncio.to_thread(
        select_execution_backend,
        settings,
        storage,
        runner,
        status_store
    )
    app.state.dispatcher = JobDispatcher(
        backend,
        fallback_factory=lambda: DirectExecutionBackend(status_store, runner)
    )

    sweeper = asyncio.create_task(
        status_store.run_sweeper(settings.JOB_STATUS_SWEEP_INTERVAL_SECONDS)
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        execution_mode=backend.mode.value
    )

    logger.info(
        "application_ready",
        execution_mode=backend.mode.value,
        startup_time_seconds=time.time() - startup_start
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await asyncio.to_thread(app.state.dispatcher.close)
    app.state.pipeline_executor.shutdown(wait=False, cancel_futures=True)
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Photobooth image pipeline:

    - **Chroma key**: green screen removal
    - **Compositing**: guest over a stadium or captain backdrop
    - **AI enhancement**: Gemini image generation with retry
    - **Execution**: Celery workers on Redis, or direct processing without a broker
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_router)
app.include_router(health_router, tags=["health"])


# =============================================================================
# Static Files
# =============================================================================

# Uploads are served as-is; finished images live under /static/outputs/
app.mount(
    STATIC_URL_PREFIX,
    StaticFiles(directory=settings.UPLOADS_DIR, check_dir=False),
    name="static"
)


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "photobooth.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
