"""Storage backend capability shared by the passthrough and hierarchical backends."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import httpx

from s3_gateway.models.responses import PutObjectResponse

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class StoredObject:
    """Object metadata, plus the body stream for GET (None for HEAD)."""

    content_type: str = DEFAULT_CONTENT_TYPE
    content_length: int | None = None
    etag: str | None = None
    last_modified: datetime | None = None
    body: AsyncIterator[bytes] | None = None


@dataclass
class ObjectEntry:
    """One ``Contents`` entry of a bucket listing. ``etag`` is unquoted."""

    key: str
    last_modified: datetime | None
    etag: str
    size: int
    storage_class: str = "STANDARD"


@dataclass
class ListResult:
    objects: list[ObjectEntry] = field(default_factory=list)
    prefixes: list[str] = field(default_factory=list)


class StorageBackend(Protocol):
    """Operations the gateway dispatches to.

    Implementations raise ``NotFound`` for missing objects and
    ``UpstreamFailure`` for any other backend failure.
    """

    name: str

    async def put(
        self,
        bucket: str,
        key: str,
        body: AsyncIterator[bytes],
        content_type: str,
        content_length: int | None,
    ) -> PutObjectResponse: ...

    async def get(self, bucket: str, key: str) -> StoredObject: ...

    async def head(self, bucket: str, key: str) -> StoredObject: ...

    async def delete(self, bucket: str, key: str) -> None: ...

    async def list_objects(self, bucket: str) -> ListResult: ...


def quote_etag(etag: str | None) -> str | None:
    """Wrap an entity tag in double quotes unless it already is."""
    if not etag:
        return None
    if etag.startswith('"') or etag.startswith('W/"'):
        return etag
    return f'"{etag}"'


def split_key(key: str) -> list[str]:
    """Non-empty path segments of an object key."""
    return [segment for segment in key.split("/") if segment]


async def iter_response(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield a streamed response body and close it when done or abandoned."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()
