"""S3 Gateway - FastAPI application."""

import asyncio
import logging
import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import httpx
import time
import uuid

from s3_gateway.cache import FolderResolutionCache, ResponseCache
from s3_gateway.config import settings
from s3_gateway.dependencies import build_backend, build_store
from s3_gateway.errors import GatewayError, NotFound, UpstreamFailure
from s3_gateway.routers import health, metrics, s3
from s3_gateway.stores import KeyValueStore
from s3_gateway.middleware.metrics import MetricsMiddleware, normalize_path
from s3_gateway.metrics import ERROR_COUNT, set_service_info


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if not settings.debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.INFO if not settings.debug else logging.DEBUG
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


async def cleanup_expired_cache_entries_task(store: KeyValueStore):
    """Background task to periodically drop expired cache entries."""
    logger = structlog.get_logger()
    # Run cleanup every 5 minutes
    cleanup_interval = 300

    while True:
        try:
            await asyncio.sleep(cleanup_interval)
            count = await store.cleanup_expired()
            if count > 0:
                logger.info("cache_cleanup_completed", deleted_count=count)
        except asyncio.CancelledError:
            logger.info("cache_cleanup_task_cancelled")
            break
        except Exception as e:
            logger.error("cache_cleanup_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger = structlog.get_logger()
    logger.info(
        "application_startup",
        version=settings.api_version,
        debug=settings.debug,
        backend=settings.storage_backend,
        cache_store=settings.cache_store,
        allowed_buckets=settings.allowed_bucket_names,
    )
    set_service_info(version=settings.api_version, backend=settings.storage_backend)

    if not settings.allowed_bucket_names:
        logger.warning("allowed_buckets_empty", message="Every bucket will be denied")
    if not settings.s3_secret_access_key:
        logger.warning("s3_secret_missing", message="Every signed request will be rejected")

    try:
        store = build_store(settings)
    except Exception as e:
        logger.error("cache_store_init_failed", error=str(e), exc_info=True)
        raise

    folder_cache = FolderResolutionCache(store, ttl_seconds=settings.folder_cache_ttl_seconds)
    response_cache = ResponseCache(
        store,
        ttl_seconds=settings.response_cache_ttl_seconds,
        max_object_bytes=settings.response_cache_max_object_bytes,
        enabled=settings.response_cache_enabled,
    )
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    app.state.store = store
    app.state.folder_cache = folder_cache
    app.state.response_cache = response_cache
    app.state.http_client = http_client
    app.state.backend = build_backend(settings, http_client, folder_cache)

    cleanup_task = asyncio.create_task(cleanup_expired_cache_entries_task(store))
    logger.info("background_tasks_started", tasks=["cache_cleanup"])

    yield

    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

    await response_cache.drain()
    await http_client.aclose()
    await store.close()

    logger.info("application_shutdown")


# Setup logging before creating app
setup_logging()
logger = structlog.get_logger()

# Create FastAPI application
app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="""
S3-compatible gateway.

Accepts path-style S3 requests signed with AWS Signature V4 (header or
pre-signed URL) and serves them from the configured backend:
- `passthrough`: a native S3-compatible store, requests re-signed upstream
- `drive`: Google Drive, keys mapped onto a folder tree

Only buckets listed in `ALLOWED_BUCKETS` are reachable. GET responses are
cached and invalidated by PUT/DELETE on the same key.
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Add metrics middleware (for Prometheus request instrumentation)
app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log all requests with timing and request ID."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    start_time = time.perf_counter()

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
    )

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )

    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    """Render gateway errors as short plain-text bodies."""
    endpoint = normalize_path(request.url.path)
    ERROR_COUNT.labels(type=exc.code, endpoint=endpoint).inc()

    log = logger.error if isinstance(exc, UpstreamFailure) else logger.info
    log(
        "s3_request_failed",
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        error_code=exc.code,
        error=exc.message,
    )

    # Only GET carries the NoSuchKey marker; HEAD never has a body
    body = exc.message
    if request.method == "HEAD" or (isinstance(exc, NotFound) and request.method != "GET"):
        body = ""

    return PlainTextResponse(body, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def routing_error_handler(request: Request, exc: StarletteHTTPException):
    """Plain-text 405 for unsupported methods; everything else as FastAPI does."""
    if exc.status_code == 405:
        ERROR_COUNT.labels(type="MethodNotAllowed", endpoint=normalize_path(request.url.path)).inc()
        return PlainTextResponse("Method not allowed", status_code=405)
    return await http_exception_handler(request, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    # Normalize path for metrics
    endpoint = normalize_path(request.url.path)

    # Determine error type
    error_type = type(exc).__name__

    # Record error metric
    ERROR_COUNT.labels(type=error_type, endpoint=endpoint).inc()

    logger.error(
        "unhandled_exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=error_type,
        exc_info=True,
    )
    return PlainTextResponse(str(exc), status_code=500)


# Include routers (operational endpoints before the catch-all object routes)
app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(s3.router)


def run() -> None:
    """Run the gateway with uvicorn."""
    import uvicorn

    uvicorn.run(
        "s3_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()

