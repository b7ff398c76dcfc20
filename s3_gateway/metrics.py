"""Prometheus metrics definitions for the S3 gateway.

This module defines all Prometheus metrics used for observability:
- HTTP request metrics (count, duration, in-flight)
- S3 operation metrics (operations, duration, bytes)
- Signature verification outcomes
- Response cache and folder resolution cache metrics
- Backend call metrics
- Process metrics (CPU, memory, file descriptors)
"""

import platform
import time
from prometheus_client import Counter, Histogram, Gauge, Info
from prometheus_client import ProcessCollector

# ProcessCollector only works on Linux (uses /proc filesystem)
if platform.system() == "Linux":
    try:
        ProcessCollector()
    except ValueError:
        pass  # Already registered on the default registry

# =============================================================================
# Service Health Metrics
# =============================================================================

SERVICE_UP = Gauge(
    "s3gw_up",
    "Whether the S3 gateway is up (1) or down (0)"
)

SERVICE_START_TIME = Gauge(
    "s3gw_start_time_seconds",
    "Unix timestamp when the service started"
)

SERVICE_INFO = Info(
    "s3gw_build",
    "Build information about the S3 gateway"
)

_start_time = time.time()
SERVICE_START_TIME.set(_start_time)
SERVICE_UP.set(1)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "s3gw_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_DURATION = Histogram(
    "s3gw_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

REQUEST_IN_FLIGHT = Gauge(
    "s3gw_requests_in_flight",
    "Number of HTTP requests currently being processed",
    ["method"]
)

# =============================================================================
# Error Metrics
# =============================================================================

ERROR_COUNT = Counter(
    "s3gw_errors_total",
    "Total number of errors by type",
    ["type", "endpoint"]
)

# =============================================================================
# S3 Operation Metrics
# =============================================================================

S3_OPERATIONS_TOTAL = Counter(
    "s3gw_s3_operations_total",
    "Total S3-compatible API operations",
    ["operation", "status"]  # operation: GetObject, PutObject, DeleteObject, ListObjects, HeadObject
)

S3_OPERATION_DURATION = Histogram(
    "s3gw_s3_operation_duration_seconds",
    "S3 operation duration in seconds",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

S3_BYTES_IN_TOTAL = Counter(
    "s3gw_s3_bytes_in_total",
    "Total bytes received via S3 API"
)

S3_BYTES_OUT_TOTAL = Counter(
    "s3gw_s3_bytes_out_total",
    "Total bytes sent via S3 API"
)

SIGNATURE_VERIFICATIONS_TOTAL = Counter(
    "s3gw_signature_verifications_total",
    "AWS Signature V4 verification outcomes",
    ["auth_type", "result"]  # auth_type: header, query; result: valid, invalid
)

# =============================================================================
# Cache Metrics
# =============================================================================

RESPONSE_CACHE_HITS = Counter(
    "s3gw_response_cache_hits_total",
    "Total number of response cache hits",
    ["method"]
)

RESPONSE_CACHE_MISSES = Counter(
    "s3gw_response_cache_misses_total",
    "Total number of response cache misses",
    ["method"]
)

RESPONSE_CACHE_STORES = Counter(
    "s3gw_response_cache_stores_total",
    "Total number of responses written to the cache"
)

RESPONSE_CACHE_INVALIDATIONS = Counter(
    "s3gw_response_cache_invalidations_total",
    "Total number of response cache invalidations"
)

FOLDER_CACHE_HITS = Counter(
    "s3gw_folder_cache_hits_total",
    "Total number of folder resolution cache hits"
)

FOLDER_CACHE_MISSES = Counter(
    "s3gw_folder_cache_misses_total",
    "Total number of folder resolution cache misses"
)

FOLDERS_CREATED_TOTAL = Counter(
    "s3gw_folders_created_total",
    "Total number of folders created in the hierarchical backend"
)

CACHE_STORE_ERRORS = Counter(
    "s3gw_cache_store_errors_total",
    "Errors raised by the shared key-value store",
    ["operation"]  # get, put, delete
)

# =============================================================================
# Backend Metrics
# =============================================================================

BACKEND_REQUESTS_TOTAL = Counter(
    "s3gw_backend_requests_total",
    "Total number of calls made to the storage backend",
    ["backend", "operation", "status_code"]
)

BACKEND_REQUEST_DURATION = Histogram(
    "s3gw_backend_request_duration_seconds",
    "Storage backend call duration in seconds",
    ["backend", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 30.0]
)


def set_service_info(version: str, backend: str) -> None:
    """Set service info metric."""
    SERVICE_INFO.info({
        "version": version,
        "backend": backend,
        "python_version": platform.python_version(),
    })
