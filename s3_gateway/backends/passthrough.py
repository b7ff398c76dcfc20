"""Passthrough backend: forwards object operations to an S3-compatible store.

Requests are re-signed with the gateway's own upstream credentials using the
same SigV4 canonical form the gateway verifies inbound requests with. Bodies
are streamed both ways.
"""

import time
import urllib.parse
from collections.abc import AsyncIterator
from datetime import datetime
from email.utils import parsedate_to_datetime
from xml.etree import ElementTree as ET

import httpx
import structlog

from s3_gateway import metrics
from s3_gateway.backends.base import (
    DEFAULT_CONTENT_TYPE,
    ListResult,
    ObjectEntry,
    StoredObject,
    iter_response,
)
from s3_gateway.errors import NotFound, UpstreamFailure
from s3_gateway.models.responses import PutObjectResponse
from s3_gateway.signing import RequestParts, sign_request

logger = structlog.get_logger()


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _parse_s3_timestamp(value: str | None) -> datetime | None:
    """Parse ``2024-01-01T12:00:00.000Z`` as found in listing documents."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _strip_ns(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_list_objects_xml(document: str | bytes) -> tuple[list[ObjectEntry], list[str], str | None]:
    """Parse a ListBucketResult document.

    Returns (objects, common prefixes, next continuation token).
    """
    root = ET.fromstring(document)
    objects: list[ObjectEntry] = []
    prefixes: list[str] = []
    next_token = None
    truncated = False

    for child in root:
        tag = _strip_ns(child.tag)
        if tag == "Contents":
            fields = {_strip_ns(el.tag): (el.text or "") for el in child}
            objects.append(
                ObjectEntry(
                    key=fields.get("Key", ""),
                    last_modified=_parse_s3_timestamp(fields.get("LastModified")),
                    etag=fields.get("ETag", "").strip('"'),
                    size=int(fields.get("Size") or 0),
                    storage_class=fields.get("StorageClass") or "STANDARD",
                )
            )
        elif tag == "CommonPrefixes":
            for el in child:
                if _strip_ns(el.tag) == "Prefix" and el.text:
                    prefixes.append(el.text)
        elif tag == "IsTruncated":
            truncated = (child.text or "").strip().lower() == "true"
        elif tag == "NextContinuationToken":
            next_token = child.text

    return objects, prefixes, next_token if truncated else None


class PassthroughBackend:
    """Storage backend that proxies to a native S3-compatible endpoint."""

    name = "passthrough"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        endpoint: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        scheme: str = "https",
    ):
        self._http = http_client
        self._base_url = f"{scheme}://{endpoint.rstrip('/')}"
        self._access_key = access_key
        self._secret_key = secret_key
        self._region = region

    def _url(self, bucket: str, key: str | None = None) -> str:
        url = f"{self._base_url}/{urllib.parse.quote(bucket, safe='')}"
        if key:
            url += "/" + urllib.parse.quote(key, safe="/-_.~")
        return url

    def _sign(self, method: str, url: str, headers: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(headers or {})
        parts = RequestParts.from_url(method, url, headers)
        headers.update(sign_request(parts, self._access_key, self._secret_key, self._region))
        return headers

    def _observe(self, operation: str, status_code: int, started: float) -> None:
        metrics.BACKEND_REQUESTS_TOTAL.labels(
            backend=self.name, operation=operation, status_code=str(status_code)
        ).inc()
        metrics.BACKEND_REQUEST_DURATION.labels(
            backend=self.name, operation=operation
        ).observe(time.perf_counter() - started)

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        content: AsyncIterator[bytes] | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        request = self._http.build_request(method, url, headers=self._sign(method, url, headers), content=content)
        started = time.perf_counter()
        try:
            response = await self._http.send(request, stream=stream)
        except httpx.HTTPError as e:
            logger.error("upstream_request_error", operation=operation, url=url, error=str(e))
            raise UpstreamFailure(f"Upstream {operation} failed: {e}") from e
        self._observe(operation, response.status_code, started)
        return response

    @staticmethod
    def _metadata(response: httpx.Response) -> StoredObject:
        length = response.headers.get("content-length")
        return StoredObject(
            content_type=response.headers.get("content-type", DEFAULT_CONTENT_TYPE),
            content_length=int(length) if length is not None else None,
            etag=response.headers.get("etag"),
            last_modified=_parse_http_date(response.headers.get("last-modified")),
        )

    async def put(
        self,
        bucket: str,
        key: str,
        body: AsyncIterator[bytes],
        content_type: str,
        content_length: int | None,
    ) -> PutObjectResponse:
        headers = {"Content-Type": content_type}
        if content_length is not None:
            headers["Content-Length"] = str(content_length)

        response = await self._send("put", "PUT", self._url(bucket, key), headers=headers, content=body)
        if not response.is_success:
            raise UpstreamFailure(f"Upload failed: {response.status_code} {response.text}")
        return PutObjectResponse(etag=response.headers.get("etag"))

    async def get(self, bucket: str, key: str) -> StoredObject:
        response = await self._send("get", "GET", self._url(bucket, key), stream=True)
        if not response.is_success:
            await response.aread()
            await response.aclose()
            if response.status_code == 404:
                raise NotFound()
            raise UpstreamFailure(f"Download failed: {response.status_code}")

        stored = self._metadata(response)
        stored.body = iter_response(response)
        return stored

    async def head(self, bucket: str, key: str) -> StoredObject:
        response = await self._send("head", "HEAD", self._url(bucket, key))
        if response.status_code == 404:
            raise NotFound()
        if not response.is_success:
            raise UpstreamFailure(f"HEAD failed: {response.status_code}")
        return self._metadata(response)

    async def delete(self, bucket: str, key: str) -> None:
        response = await self._send("delete", "DELETE", self._url(bucket, key))
        if response.status_code == 404:
            raise NotFound()
        if not response.is_success:
            raise UpstreamFailure(f"Delete failed: {response.status_code}")

    async def list_objects(self, bucket: str) -> ListResult:
        result = ListResult()
        token: str | None = None

        while True:
            query = {"list-type": "2"}
            if token:
                query["continuation-token"] = token
            url = f"{self._url(bucket)}?{urllib.parse.urlencode(query, quote_via=urllib.parse.quote)}"

            response = await self._send("list", "GET", url)
            if not response.is_success:
                raise UpstreamFailure(f"List failed: {response.status_code}")

            try:
                objects, prefixes, token = parse_list_objects_xml(response.content)
            except ET.ParseError as e:
                raise UpstreamFailure(f"List failed: invalid listing document ({e})") from e

            result.objects.extend(objects)
            result.prefixes.extend(prefixes)
            if not token:
                return result
