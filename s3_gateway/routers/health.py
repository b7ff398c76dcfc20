"""Health check endpoint."""

from pathlib import Path

import structlog
from fastapi import APIRouter, HTTPException, status

from s3_gateway.config import settings
from s3_gateway.models.responses import HealthResponse

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


def _check_path_writable(path: Path) -> bool:
    """Check if a directory is writable by creating a test file."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / ".write_test"
        test_file.touch()
        test_file.unlink()
        return True
    except (OSError, PermissionError):
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check if the gateway is running and its cache store is usable.",
)
async def health_check() -> HealthResponse:
    """
    Perform health check.

    Validates:
    - Service is running
    - The DuckDB cache directory is writable (when the DuckDB store is used)
    """
    healthy = True
    if settings.cache_store == "duckdb":
        healthy = _check_path_writable(settings.cache_db_path.parent)

    logger.info(
        "health_check",
        status="healthy" if healthy else "unhealthy",
        backend=settings.storage_backend,
    )

    if not healthy:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "cache_store_unavailable",
                "message": f"Cache directory is not writable: {settings.cache_db_path.parent}",
            },
        )

    return HealthResponse(
        status="healthy",
        version=settings.api_version,
        backend=settings.storage_backend,
        cache_store=settings.cache_store,
    )
