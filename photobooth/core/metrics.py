"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, job outcomes and enhancement API calls.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

from photobooth import __version__

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Enhancement API Calls (one per attempt)
enhancement_api_calls_total = Counter(
    "enhancement_api_calls_total",
    "Total number of generative-image enhancement attempts",
    labelnames=["status"]
)

# Jobs Counter
jobs_total = Counter(
    "photobooth_jobs_total",
    "Total number of photo jobs processed",
    labelnames=["status", "failure_stage"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "photobooth_active_jobs",
    "Number of currently processing jobs"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 60.0]
)

# Application Info
app_info = Info(
    "photobooth_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str, execution_mode: str = "unknown"):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment,
        "execution_mode": execution_mode
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("compositing"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(time.time() - start)


def record_enhancement_call(status: str):
    """Record one enhancement API attempt."""
    enhancement_api_calls_total.labels(status=status).inc()


def record_job_started():
    active_jobs_gauge.inc()


def record_job_completion(status: str, duration_seconds: float, failure_stage: str = "none"):
    """Record a job reaching a terminal state."""
    jobs_total.labels(status=status, failure_stage=failure_stage).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)
    active_jobs_gauge.dec()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version=__version__, environment="development")
