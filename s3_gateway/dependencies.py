"""FastAPI dependencies for the S3-compatible endpoints.

Every object request goes through ``authorize_s3_request`` before the
endpoint body runs:

1. Parse the bucket and key from the path (empty segments dropped)
2. Reject buckets that are not on the allow-list (403, no signature check)
3. Verify the AWS Signature V4 (header or pre-signed query)

Backend and cache instances are created once in the application lifespan and
stored on ``app.state``; endpoints reach them through the accessors below so
tests can swap them with ``app.dependency_overrides``.

Usage in routers:
    @router.get("/{path:path}")
    async def get_object(address: S3Address, backend: Backend, cache: Cache):
        ...
"""

import urllib.parse
from dataclasses import dataclass
from typing import Annotated

import httpx
import structlog
from fastapi import Depends, Request

from s3_gateway import metrics
from s3_gateway.backends.base import StorageBackend, split_key
from s3_gateway.backends.drive_client import DriveClient, DriveTokenProvider
from s3_gateway.backends.hierarchical import HierarchicalBackend
from s3_gateway.backends.passthrough import PassthroughBackend
from s3_gateway.cache import FolderResolutionCache, ResponseCache
from s3_gateway.config import Settings, settings
from s3_gateway.errors import AccessDenied, InvalidSignature
from s3_gateway.signing import RequestParts, detect_auth_type, verify_signature
from s3_gateway.stores import DuckDBStore, KeyValueStore, MemoryStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ObjectAddress:
    """Bucket and key addressed by a request. An empty key is the bucket root."""

    bucket: str
    key: str

    @property
    def is_bucket_root(self) -> bool:
        return not self.key


def parse_object_address(path: str) -> ObjectAddress:
    """Split a request path into bucket and key.

    ``/b//x/`` addresses key ``x`` in bucket ``b``.
    """
    segments = split_key(path)
    if not segments:
        return ObjectAddress(bucket="", key="")
    return ObjectAddress(bucket=segments[0], key="/".join(segments[1:]))


def request_parts(request: Request) -> RequestParts:
    """Collect the signed parts of an inbound request.

    The path is taken as sent on the wire (still percent-encoded), since that
    is what the client signed.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
    else:
        path = urllib.parse.quote(request.url.path, safe="/-_.~")

    return RequestParts(
        method=request.method,
        scheme=request.url.scheme,
        hostname=request.url.hostname or "",
        port=request.url.port,
        raw_path=path,
        query_string=request.scope.get("query_string", b"").decode("latin-1"),
        headers={k.lower(): v for k, v in request.headers.items()},
    )


async def get_object_address(path: str) -> ObjectAddress:
    return parse_object_address(path)


async def authorize_s3_request(
    request: Request,
    address: Annotated[ObjectAddress, Depends(get_object_address)],
) -> ObjectAddress:
    """
    Dependency for S3-compatible object endpoints.

    Returns:
        The parsed object address

    Raises:
        AccessDenied: If the bucket is not on the allow-list
        InvalidSignature: If the request is unsigned or the signature is wrong
    """
    if address.bucket not in settings.allowed_bucket_names:
        logger.warning("s3_bucket_access_denied", bucket=address.bucket)
        raise AccessDenied()

    parts = request_parts(request)
    auth_type = detect_auth_type(parts) or "none"

    if not settings.s3_secret_access_key:
        logger.error("s3_secret_not_configured")
        metrics.SIGNATURE_VERIFICATIONS_TOTAL.labels(auth_type=auth_type, result="invalid").inc()
        raise InvalidSignature()

    is_valid = verify_signature(
        parts,
        settings.s3_access_key_id,
        settings.s3_secret_access_key,
        settings.s3_region,
        max_age_seconds=settings.s3_sig_v4_max_age_seconds,
    )
    metrics.SIGNATURE_VERIFICATIONS_TOTAL.labels(
        auth_type=auth_type, result="valid" if is_valid else "invalid"
    ).inc()

    if not is_valid:
        logger.warning("s3_signature_rejected", bucket=address.bucket, auth_type=auth_type)
        raise InvalidSignature()

    return address


def get_backend(request: Request) -> StorageBackend:
    return request.app.state.backend


def get_response_cache(request: Request) -> ResponseCache:
    return request.app.state.response_cache


def build_store(config: Settings) -> KeyValueStore:
    """Create the shared key-value store both caches live on."""
    if config.cache_store == "duckdb":
        store = DuckDBStore(config.cache_db_path)
        store.initialize()
        return store
    return MemoryStore()


def build_backend(
    config: Settings,
    http_client: httpx.AsyncClient,
    folder_cache: FolderResolutionCache,
) -> StorageBackend:
    """Create the storage backend selected by ``storage_backend``."""
    if config.storage_backend == "drive":
        if config.drive_oauth_configured:
            tokens = DriveTokenProvider(
                http_client,
                client_id=config.drive_client_id,
                client_secret=config.drive_client_secret,
                refresh_token=config.drive_refresh_token,
                token_url=config.drive_token_url,
            )
        else:
            if not config.drive_access_token:
                logger.warning("drive_credentials_missing")
            tokens = DriveTokenProvider(http_client, access_token=config.drive_access_token)
        client = DriveClient(
            http_client,
            tokens,
            api_url=config.drive_api_url,
            upload_url=config.drive_upload_url,
        )
        return HierarchicalBackend(client, folder_cache, root_folder_id=config.drive_root_folder_id)

    return PassthroughBackend(
        http_client,
        endpoint=config.upstream_endpoint,
        access_key=config.upstream_access_key_id,
        secret_key=config.upstream_secret_access_key,
        region=config.upstream_region,
        scheme=config.upstream_scheme,
    )


# Type aliases for cleaner router signatures
S3Address = Annotated[ObjectAddress, Depends(authorize_s3_request)]
Backend = Annotated[StorageBackend, Depends(get_backend)]
Cache = Annotated[ResponseCache, Depends(get_response_cache)]
