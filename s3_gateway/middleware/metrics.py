"""Prometheus metrics middleware for HTTP request instrumentation.

Collects HTTP request metrics:
- Request count by method, endpoint, status code
- Request duration histogram
- In-flight requests gauge
"""

import time
import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from s3_gateway.metrics import (
    REQUEST_COUNT,
    REQUEST_DURATION,
    REQUEST_IN_FLIGHT,
)

logger = structlog.get_logger()

# Paths served by the gateway itself rather than the object API
OPERATIONAL_PATHS = {"/metrics", "/health", "/docs", "/redoc", "/openapi.json"}


def normalize_path(path: str) -> str:
    """
    Normalize path for metrics labels to avoid high cardinality.

    Bucket names and object keys are replaced with placeholders.

    Examples:
        / -> /
        /photos -> /{bucket}
        /photos/ -> /{bucket}
        /photos/2024/a.jpg -> /{bucket}/{key}
        /health -> /health
    """
    if path in OPERATIONAL_PATHS:
        return path

    parts = [p for p in path.split("/") if p]
    if not parts:
        return "/"
    if len(parts) == 1:
        return "/{bucket}"
    return "/{bucket}/{key}"


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware that collects Prometheus metrics for HTTP requests.

    Metrics collected:
    - s3gw_requests_total: Counter by method, endpoint, status_code
    - s3gw_request_duration_seconds: Histogram by method, endpoint
    - s3gw_requests_in_flight: Gauge by method
    """

    # Endpoints to skip (scrapes and docs)
    SKIP_PATHS = {"/metrics", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        method = request.method

        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        endpoint = normalize_path(request.url.path)

        REQUEST_IN_FLIGHT.labels(method=method).inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        except Exception:
            status_code = "500"
            raise
        finally:
            duration = time.perf_counter() - start_time
            REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)
            REQUEST_COUNT.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()
            REQUEST_IN_FLIGHT.labels(method=method).dec()

        return response
