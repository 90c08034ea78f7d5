"""Prometheus metrics for the API and the transcode workers."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "vodpipeline_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Transcode Pipeline Metrics
# ============================================
TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Finished transcode attempts by outcome",
    ["outcome"],  # ready, retry, failed
    registry=REGISTRY,
)

TRANSCODE_ACTIVE_JOBS = Gauge(
    "transcode_active_jobs",
    "Transcode jobs currently holding an encoder slot",
    ["worker_id"],
    registry=REGISTRY,
)

RENDITION_ENCODE_SECONDS = Histogram(
    "rendition_encode_duration_seconds",
    "Wall time of a single rendition encode",
    ["rendition"],
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 3600, 7200],
    registry=REGISTRY,
)

RENDITIONS_PUBLISHED_TOTAL = Counter(
    "renditions_published_total",
    "Renditions written to storage and listed in a master playlist",
    ["rendition"],
    registry=REGISTRY,
)

CLAIM_CONFLICTS_TOTAL = Counter(
    "transcode_claim_conflicts_total",
    "Claims lost to another worker",
    registry=REGISTRY,
)

LEASES_RECLAIMED_TOTAL = Counter(
    "transcode_leases_reclaimed_total",
    "Expired transcode leases returned to the queue",
    registry=REGISTRY,
)


# ============================================
# View Analytics Metrics
# ============================================
VIEW_REPORTS_TOTAL = Counter(
    "view_reports_total",
    "View reports received by result",
    ["result"],  # accepted, duplicate, not_found
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format.

    Returns:
        bytes: Prometheus-formatted metrics
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
