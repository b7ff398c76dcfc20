"""Tests for the S3 passthrough backend.

The fake upstream verifies the gateway's outbound signature on every request,
so a successful call here also means the request was re-signed correctly.
"""

import asyncio
import hashlib

import httpx
import pytest
from conftest import UPSTREAM_ACCESS_KEY, UPSTREAM_HOST, UPSTREAM_REGION, UPSTREAM_SECRET_KEY

from s3_gateway.backends.passthrough import PassthroughBackend, parse_list_objects_xml
from s3_gateway.errors import NotFound, UpstreamFailure

BUCKET = "test-bucket"


async def _body(data: bytes):
    yield data


async def _read(stored) -> bytes:
    return b"".join([chunk async for chunk in stored.body])


class TestObjectOperations:
    def test_put_then_get(self, passthrough_backend, s3_upstream):
        async def scenario():
            result = await passthrough_backend.put(BUCKET, "docs/hello.txt", _body(b"Hello World"), "text/plain", 11)
            stored = await passthrough_backend.get(BUCKET, "docs/hello.txt")
            return result, stored, await _read(stored)

        result, stored, body = asyncio.run(scenario())

        assert result.etag == f'"{hashlib.md5(b"Hello World").hexdigest()}"'
        assert result.id is None
        assert body == b"Hello World"
        assert stored.content_type == "text/plain"
        assert stored.etag == result.etag
        assert stored.last_modified is not None
        assert s3_upstream.signature_failures == 0

    def test_key_needing_escapes(self, passthrough_backend, s3_upstream):
        key = "my folder/résumé (final).pdf"

        async def scenario():
            await passthrough_backend.put(BUCKET, key, _body(b"pdf"), "application/pdf", 3)
            return await _read(await passthrough_backend.get(BUCKET, key))

        assert asyncio.run(scenario()) == b"pdf"
        assert (BUCKET, key) in s3_upstream.objects
        assert s3_upstream.signature_failures == 0

    def test_head(self, passthrough_backend):
        async def scenario():
            await passthrough_backend.put(BUCKET, "a.bin", _body(b"12345"), "application/octet-stream", 5)
            return await passthrough_backend.head(BUCKET, "a.bin")

        stored = asyncio.run(scenario())
        assert stored.content_length == 5
        assert stored.body is None

    def test_get_missing(self, passthrough_backend):
        with pytest.raises(NotFound):
            asyncio.run(passthrough_backend.get(BUCKET, "missing.txt"))

    def test_head_missing(self, passthrough_backend):
        with pytest.raises(NotFound):
            asyncio.run(passthrough_backend.head(BUCKET, "missing.txt"))

    def test_delete(self, passthrough_backend, s3_upstream):
        async def scenario():
            await passthrough_backend.put(BUCKET, "gone.txt", _body(b"x"), "text/plain", 1)
            await passthrough_backend.delete(BUCKET, "gone.txt")

        asyncio.run(scenario())
        assert (BUCKET, "gone.txt") not in s3_upstream.objects

    def test_upstream_error_on_put(self, passthrough_backend, s3_upstream):
        s3_upstream.fail_with = 500

        with pytest.raises(UpstreamFailure) as exc_info:
            asyncio.run(passthrough_backend.put(BUCKET, "a.txt", _body(b"x"), "text/plain", 1))
        assert exc_info.value.message.startswith("Upload failed: 500")

    def test_upstream_error_on_get(self, passthrough_backend, s3_upstream):
        s3_upstream.fail_with = 503

        with pytest.raises(UpstreamFailure) as exc_info:
            asyncio.run(passthrough_backend.get(BUCKET, "a.txt"))
        assert exc_info.value.message == "Download failed: 503"

    def test_wrong_upstream_credentials(self, s3_upstream):
        http = httpx.AsyncClient(transport=httpx.MockTransport(s3_upstream.handler))
        backend = PassthroughBackend(
            http, UPSTREAM_HOST, UPSTREAM_ACCESS_KEY, "wrong-secret", region=UPSTREAM_REGION
        )

        with pytest.raises(UpstreamFailure):
            asyncio.run(backend.put(BUCKET, "a.txt", _body(b"x"), "text/plain", 1))
        assert s3_upstream.signature_failures == 1

    def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        backend = PassthroughBackend(http, UPSTREAM_HOST, UPSTREAM_ACCESS_KEY, UPSTREAM_SECRET_KEY)

        with pytest.raises(UpstreamFailure) as exc_info:
            asyncio.run(backend.head(BUCKET, "a.txt"))
        assert exc_info.value.message.startswith("Upstream head failed")


class TestListObjects:
    def test_list(self, passthrough_backend, s3_upstream):
        async def scenario():
            await passthrough_backend.put(BUCKET, "b.txt", _body(b"bb"), "text/plain", 2)
            await passthrough_backend.put(BUCKET, "a.txt", _body(b"a"), "text/plain", 1)
            await passthrough_backend.put("other-bucket", "c.txt", _body(b"c"), "text/plain", 1)
            return await passthrough_backend.list_objects(BUCKET)

        result = asyncio.run(scenario())
        assert [o.key for o in result.objects] == ["a.txt", "b.txt"]
        assert result.objects[1].size == 2
        assert not result.objects[0].etag.startswith('"')
        list_request = s3_upstream.requests[-1]
        assert list_request.url.params["list-type"] == "2"

    def test_parse_listing_with_namespace_and_continuation(self):
        document = b"""<?xml version="1.0" encoding="UTF-8"?>
<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">
  <Name>bucket</Name>
  <IsTruncated>true</IsTruncated>
  <NextContinuationToken>token-2</NextContinuationToken>
  <Contents>
    <Key>photos/cat.jpg</Key>
    <LastModified>2025-01-01T12:00:00.000Z</LastModified>
    <ETag>&quot;abc123&quot;</ETag>
    <Size>42</Size>
    <StorageClass>STANDARD</StorageClass>
  </Contents>
  <CommonPrefixes><Prefix>videos/</Prefix></CommonPrefixes>
</ListBucketResult>"""
        objects, prefixes, token = parse_list_objects_xml(document)

        assert len(objects) == 1
        assert objects[0].key == "photos/cat.jpg"
        assert objects[0].etag == "abc123"
        assert objects[0].size == 42
        assert objects[0].last_modified.year == 2025
        assert prefixes == ["videos/"]
        assert token == "token-2"

    def test_continuation_token_ignored_when_not_truncated(self):
        document = (
            "<ListBucketResult><IsTruncated>false</IsTruncated>"
            "<NextContinuationToken>stale</NextContinuationToken></ListBucketResult>"
        )
        assert parse_list_objects_xml(document) == ([], [], None)
