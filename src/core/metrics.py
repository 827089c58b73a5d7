"""
Prometheus Metrics for Observability

Tracks batch progress, remote API calls and chunk latency.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager
from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Remote compositing calls (one per attempt)
compositing_api_calls_total = Counter(
    "compositing_api_calls_total",
    "Total number of compositing API calls",
    labelnames=["status", "http_status"]
)

# Retries scheduled by the retry executor
compositing_retries_total = Counter(
    "compositing_retries_total",
    "Total number of retried compositing API calls",
    labelnames=["attempt"]
)

# Per-image outcome
images_processed_total = Counter(
    "compositor_images_processed_total",
    "Total number of images with a terminal outcome",
    labelnames=["status"]
)

# Chunk latency
chunk_latency_seconds = Histogram(
    "compositor_chunk_latency_seconds",
    "Time spent processing one chunk",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Whole batch duration
batch_duration_seconds = Histogram(
    "compositor_batch_duration_seconds",
    "Total time for a batch",
    buckets=[5.0, 30.0, 60.0, 300.0, 600.0, 1800.0, 3600.0]
)

# Active batches
active_batches_gauge = Gauge(
    "compositor_active_batches",
    "Number of batches currently processing"
)

# Sessions held in memory
sessions_gauge = Gauge(
    "compositor_sessions",
    "Number of sessions currently held in memory"
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "compositor_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_chunk_latency():
    """
    Context manager to track chunk latency.

    Usage:
        with track_chunk_latency():
            await asyncio.gather(*tasks)
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        chunk_latency_seconds.labels(status=status).observe(time.time() - start)


def record_compositing_call(status: str, http_status: Optional[int] = None):
    """Record one compositing API attempt."""
    compositing_api_calls_total.labels(
        status=status,
        http_status=str(http_status) if http_status is not None else "none"
    ).inc()


def record_retry(attempt: int):
    """Record a scheduled retry."""
    compositing_retries_total.labels(attempt=str(attempt)).inc()


def record_image_outcome(success: bool):
    """Record a terminal image outcome."""
    images_processed_total.labels(status="success" if success else "failed").inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
