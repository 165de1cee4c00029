"""Prometheus metrics for the encoding gateway.

Tracks HTTP traffic, webhook ingestion outcomes and broker dispatch results.
"""

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

REGISTRY = CollectorRegistry()

if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "encoding_gateway_app",
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
# Webhook Ingestion Metrics
# ============================================
WEBHOOK_EVENTS_TOTAL = Counter(
    "encoding_webhook_events_total",
    "Encoding webhook deliveries by event type and outcome",
    ["event", "outcome"],
    registry=REGISTRY,
)

WEBHOOK_REJECTIONS_TOTAL = Counter(
    "encoding_webhook_rejections_total",
    "Encoding webhook deliveries rejected before reduction",
    ["reason"],
    registry=REGISTRY,
)

WEBHOOK_REDUCE_DURATION_SECONDS = Histogram(
    "encoding_webhook_reduce_duration_seconds",
    "Time spent applying one webhook event to persisted state",
    ["event"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)


# ============================================
# Broker Dispatch Metrics
# ============================================
JOB_PUBLISH_TOTAL = Counter(
    "encoding_job_publish_total",
    "Encode job publish attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

TOKEN_EXCHANGE_TOTAL = Counter(
    "encoding_token_exchange_total",
    "Service account token exchanges by outcome",
    ["outcome"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Render all metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})
