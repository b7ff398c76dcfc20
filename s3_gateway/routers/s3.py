"""S3-compatible object API.

Path-style addressing only: ``/{bucket}/{key...}``. Empty path segments are
ignored, so ``/photos//2024/a.jpg`` is key ``2024/a.jpg`` in bucket ``photos``.

Supported operations:
- GetObject (GET /{bucket}/{key})
- ListObjects (GET /{bucket} or /{bucket}/)
- PutObject (PUT /{bucket}/{key})
- DeleteObject (DELETE /{bucket}/{key})
- HeadObject (HEAD /{bucket}/{key})
- OPTIONS on any path returns 204 without authentication

Every other method gets 405. Bucket allow-list and AWS Signature V4 checks
run as a dependency before any backend or cache work.

Response caching:
- GET responses are served from the ResponseCache when present, otherwise
  streamed from the backend and stored after the body has been sent.
- HEAD is answered from a cached GET entry when present.
- PUT and DELETE invalidate the entry before calling the backend.
"""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from xml.etree import ElementTree as ET

import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from s3_gateway import metrics
from s3_gateway.backends.base import DEFAULT_CONTENT_TYPE, ListResult, StoredObject
from s3_gateway.cache import BodyRecorder, CachedResponse
from s3_gateway.config import settings
from s3_gateway.dependencies import Backend, Cache, S3Address
from s3_gateway.errors import InvalidRequest, NotFound

logger = structlog.get_logger()

router = APIRouter(tags=["s3"])


def _format_s3_timestamp(dt: datetime) -> str:
    """Format datetime for S3 XML response."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _format_http_date(dt: datetime) -> str:
    """Format datetime as HTTP-date (RFC 7231)."""
    return dt.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")


def _build_list_objects_xml(bucket: str, result: ListResult) -> bytes:
    """Build S3 ListBucketResult XML response."""
    root = ET.Element("ListBucketResult")

    ET.SubElement(root, "Name").text = bucket
    ET.SubElement(root, "Prefix").text = ""
    ET.SubElement(root, "KeyCount").text = str(len(result.objects))
    ET.SubElement(root, "MaxKeys").text = str(max(len(result.objects), 1000))
    ET.SubElement(root, "IsTruncated").text = "false"

    for obj in result.objects:
        contents = ET.SubElement(root, "Contents")
        ET.SubElement(contents, "Key").text = obj.key
        if obj.last_modified is not None:
            ET.SubElement(contents, "LastModified").text = _format_s3_timestamp(obj.last_modified)
        ET.SubElement(contents, "ETag").text = f'"{obj.etag}"'
        ET.SubElement(contents, "Size").text = str(obj.size)
        ET.SubElement(contents, "StorageClass").text = obj.storage_class

    for prefix in result.prefixes:
        cp_elem = ET.SubElement(root, "CommonPrefixes")
        ET.SubElement(cp_elem, "Prefix").text = prefix

    return ET.tostring(root, encoding="UTF-8", xml_declaration=True)


def _object_headers(stored: StoredObject) -> list[tuple[str, str]]:
    headers = [("Content-Type", stored.content_type or DEFAULT_CONTENT_TYPE)]
    if stored.content_length is not None:
        headers.append(("Content-Length", str(stored.content_length)))
    if stored.etag:
        headers.append(("ETag", stored.etag))
    if stored.last_modified is not None:
        headers.append(("Last-Modified", _format_http_date(stored.last_modified)))
    headers.append(("Cache-Control", settings.cache_control))
    return headers


def _cached_response(cached: CachedResponse, with_body: bool) -> Response:
    headers = dict(cached.headers)
    if cached.header("content-length") is None:
        # Streamed without a length: advertise the recorded size on GET and HEAD
        headers["Content-Length"] = str(len(cached.body))
    return Response(
        content=cached.body if with_body else None,
        status_code=cached.status_code,
        headers=headers,
    )


@asynccontextmanager
async def _track_operation(operation: str):
    """Record S3 operation count and duration around a backend call."""
    start_time = time.perf_counter()
    try:
        yield
    except NotFound:
        metrics.S3_OPERATIONS_TOTAL.labels(operation=operation, status="not_found").inc()
        raise
    except Exception:
        metrics.S3_OPERATIONS_TOTAL.labels(operation=operation, status="error").inc()
        raise
    else:
        metrics.S3_OPERATIONS_TOTAL.labels(operation=operation, status="success").inc()
    finally:
        metrics.S3_OPERATION_DURATION.labels(operation=operation).observe(time.perf_counter() - start_time)


async def _count_bytes(body: AsyncIterator[bytes], counter) -> AsyncIterator[bytes]:
    async for chunk in body:
        counter.inc(len(chunk))
        yield chunk


def _content_length(request: Request) -> int | None:
    value = request.headers.get("content-length", "")
    return int(value) if value.isdigit() else None


async def _list_objects(bucket: str, backend: Backend) -> Response:
    logger.info("s3_list_objects", bucket=bucket)

    async with _track_operation("ListObjects"):
        result = await backend.list_objects(bucket)

    xml_content = _build_list_objects_xml(bucket, result)
    return Response(content=xml_content, media_type="application/xml")


@router.options("/{path:path}", include_in_schema=False)
async def options_any(path: str) -> Response:
    """CORS-style preflight: always 204, no auth, no backend call."""
    return Response(status_code=204)


@router.head(
    "/{path:path}",
    summary="HeadObject",
    description="Get metadata about an object without downloading it. Supports pre-signed URLs.",
    responses={
        200: {"description": "Object metadata"},
        400: {"description": "Object key required"},
        403: {"description": "Bucket not allowed or invalid signature"},
        404: {"description": "Object not found"},
    },
)
async def head_object(address: S3Address, backend: Backend, cache: Cache) -> Response:
    """S3 HeadObject - Object metadata, served from a cached GET when possible."""
    if address.is_bucket_root:
        raise InvalidRequest()

    logger.info("s3_head_object", bucket=address.bucket, key=address.key)

    cached = await cache.lookup(address.bucket, address.key)
    if cached is not None:
        metrics.RESPONSE_CACHE_HITS.labels(method="HEAD").inc()
        logger.info("response_cache_hit", method="HEAD", bucket=address.bucket, key=address.key)
        return _cached_response(cached, with_body=False)
    metrics.RESPONSE_CACHE_MISSES.labels(method="HEAD").inc()

    async with _track_operation("HeadObject"):
        stored = await backend.head(address.bucket, address.key)

    return Response(status_code=200, headers=dict(_object_headers(stored)))


@router.get(
    "/{path:path}",
    summary="GetObject / ListObjects",
    description="Download an object, or list the bucket when no key is given. Supports pre-signed URLs.",
    responses={
        200: {"description": "Object content or XML listing"},
        403: {"description": "Bucket not allowed or invalid signature"},
        404: {"description": "NoSuchKey - Object not found"},
    },
)
async def get_object(address: S3Address, backend: Backend, cache: Cache) -> Response:
    """S3 GetObject - Stream an object, or ListObjects on the bucket root."""
    if address.is_bucket_root:
        return await _list_objects(address.bucket, backend)

    bucket, key = address.bucket, address.key
    logger.info("s3_get_object", bucket=bucket, key=key)

    cached = await cache.lookup(bucket, key)
    if cached is not None:
        metrics.RESPONSE_CACHE_HITS.labels(method="GET").inc()
        metrics.S3_BYTES_OUT_TOTAL.inc(len(cached.body))
        logger.info("response_cache_hit", method="GET", bucket=bucket, key=key)
        return _cached_response(cached, with_body=True)
    metrics.RESPONSE_CACHE_MISSES.labels(method="GET").inc()

    generation = await cache.generation(bucket, key) if cache.enabled else None

    async with _track_operation("GetObject"):
        stored = await backend.get(bucket, key)

    headers = _object_headers(stored)
    body = _count_bytes(stored.body, metrics.S3_BYTES_OUT_TOTAL)

    background = None
    if cache.enabled and (stored.content_length is None or stored.content_length <= cache.max_object_bytes):
        recorder = BodyRecorder(cache.max_object_bytes)
        body = recorder.tee(body)
        background = BackgroundTask(cache.store_recorded, bucket, key, 200, headers, recorder, generation)

    return StreamingResponse(body, status_code=200, headers=dict(headers), background=background)


@router.put(
    "/{path:path}",
    summary="PutObject",
    description="Upload an object. Supports pre-signed URLs.",
    responses={
        200: {"description": "Object stored; JSON body with etag (and id/name for Drive)"},
        400: {"description": "Object key required"},
        403: {"description": "Bucket not allowed or invalid signature"},
    },
)
async def put_object(address: S3Address, request: Request, backend: Backend, cache: Cache) -> Response:
    """S3 PutObject - Stream the request body into the backend."""
    if address.is_bucket_root:
        raise InvalidRequest()

    bucket, key = address.bucket, address.key
    content_type = request.headers.get("content-type") or DEFAULT_CONTENT_TYPE
    content_length = _content_length(request)
    start_time = time.time()

    logger.info(
        "s3_put_object_start",
        bucket=bucket,
        key=key,
        content_type=content_type,
        content_length=content_length,
    )

    await cache.invalidate(bucket, key)

    try:
        async with _track_operation("PutObject"):
            result = await backend.put(
                bucket,
                key,
                _count_bytes(request.stream(), metrics.S3_BYTES_IN_TOTAL),
                content_type,
                content_length,
            )
    finally:
        # Reads that overlapped the upload must not cache the old body
        await cache.invalidate(bucket, key)

    logger.info(
        "s3_put_object_complete",
        bucket=bucket,
        key=key,
        etag=result.etag,
        duration_ms=int((time.time() - start_time) * 1000),
    )

    headers = {"ETag": result.etag} if result.etag else {}
    return JSONResponse(content=result.model_dump(exclude_none=True), headers=headers)


@router.delete(
    "/{path:path}",
    summary="DeleteObject",
    description="Delete an object. Supports pre-signed URLs.",
    responses={
        204: {"description": "Object deleted"},
        400: {"description": "Object key required"},
        403: {"description": "Bucket not allowed or invalid signature"},
        404: {"description": "Object not found"},
    },
)
async def delete_object(address: S3Address, backend: Backend, cache: Cache) -> Response:
    """S3 DeleteObject."""
    if address.is_bucket_root:
        raise InvalidRequest()

    logger.info("s3_delete_object", bucket=address.bucket, key=address.key)

    await cache.invalidate(address.bucket, address.key)

    try:
        async with _track_operation("DeleteObject"):
            await backend.delete(address.bucket, address.key)
    finally:
        await cache.invalidate(address.bucket, address.key)

    return Response(status_code=204)
