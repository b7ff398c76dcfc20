"""Application configuration using pydantic-settings."""

from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables (e.g., ALLOWED_BUCKETS=photos,backups)
    2. .env file in the project root
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API settings
    api_title: str = "S3 Gateway"
    api_version: str = "0.1.0"
    debug: bool = True  # Default to True for development

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Inbound AWS Signature V4 credentials (shared by all callers)
    s3_access_key_id: str = "gateway"
    s3_secret_access_key: str | None = None
    s3_region: str = "auto"
    s3_sig_v4_max_age_seconds: int = 0  # 0 disables the header-auth age check

    # Comma-separated bucket allow-list; empty denies every bucket
    allowed_buckets: str = ""

    # Backend selection
    storage_backend: Literal["passthrough", "drive"] = "passthrough"

    # Passthrough: native S3-compatible upstream (e.g. s3.us-west-000.backblazeb2.com)
    upstream_endpoint: str = ""
    upstream_scheme: str = "https"
    upstream_access_key_id: str = ""
    upstream_secret_access_key: str = ""
    upstream_region: str = "us-east-1"

    # Drive: either a static access token or an OAuth refresh-token grant
    drive_access_token: str | None = None
    drive_client_id: str | None = None
    drive_client_secret: str | None = None
    drive_refresh_token: str | None = None
    drive_root_folder_id: str = "root"
    drive_api_url: str = "https://www.googleapis.com/drive/v3"
    drive_upload_url: str = "https://www.googleapis.com/upload/drive/v3"
    drive_token_url: str = "https://oauth2.googleapis.com/token"

    # Shared caches
    cache_store: Literal["memory", "duckdb"] = "memory"
    data_dir: Path = Path("./data")
    cache_db_path: Path | None = None
    folder_cache_ttl_seconds: int = 3600
    response_cache_enabled: bool = True
    response_cache_ttl_seconds: int = 300
    response_cache_max_object_bytes: int = 10 * 1024 * 1024
    cache_control: str = "s-maxage=300, no-store"

    # Outbound HTTP
    http_timeout_seconds: float = 60.0

    @model_validator(mode="after")
    def set_default_paths(self) -> "Settings":
        """Set default paths based on data_dir if not explicitly provided."""
        if self.cache_db_path is None:
            self.cache_db_path = self.data_dir / "cache.duckdb"
        return self

    @property
    def allowed_bucket_names(self) -> list[str]:
        """Parsed bucket allow-list (blank entries dropped)."""
        return [b.strip() for b in self.allowed_buckets.split(",") if b.strip()]

    @property
    def drive_oauth_configured(self) -> bool:
        """Check if all refresh-token credentials are available."""
        return all([self.drive_client_id, self.drive_client_secret, self.drive_refresh_token])


# Global settings instance
settings = Settings()
