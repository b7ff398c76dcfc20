"""Response models for API endpoints."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(description="API version")
    backend: str = Field(description="Configured storage backend")
    cache_store: str = Field(description="Configured cache store")


class PutObjectResponse(BaseModel):
    """Result of a successful PutObject.

    ``id`` and ``name`` are only known for the hierarchical backend.
    """

    etag: str | None = Field(default=None, description="Entity tag of the stored object")
    id: str | None = Field(default=None, description="Backend object ID")
    name: str | None = Field(default=None, description="Backend object name")
