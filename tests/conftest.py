"""Pytest configuration and fixtures.

Two in-memory fakes stand in for the real backends, both plugged into an
``httpx.AsyncClient`` through ``httpx.MockTransport``:

- ``FakeS3Upstream``: an S3-compatible store that checks the gateway's
  outbound SigV4 signature on every request
- ``FakeDrive``: the subset of the Google Drive v3 files API the
  hierarchical backend uses (search, folders, resumable uploads, media)

Inbound requests are signed with botocore so verification is checked
against an independent SigV4 implementation.
"""

import hashlib
import itertools
import json
import re
from xml.etree import ElementTree as ET

import httpx
import pytest
from botocore.auth import S3SigV4Auth, S3SigV4QueryAuth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from fastapi.testclient import TestClient

from s3_gateway.backends.drive_client import FOLDER_MIME_TYPE, DriveClient, DriveTokenProvider
from s3_gateway.backends.hierarchical import HierarchicalBackend
from s3_gateway.backends.passthrough import PassthroughBackend
from s3_gateway.cache import FolderResolutionCache, ResponseCache
from s3_gateway.config import settings
from s3_gateway.dependencies import get_backend, get_response_cache
from s3_gateway.main import app
from s3_gateway.signing import RequestParts, verify_signature
from s3_gateway.stores import MemoryStore

TEST_ACCESS_KEY = "test-access-key"
TEST_SECRET_KEY = "test-secret-key"
TEST_REGION = "auto"
TEST_BUCKET = "test-bucket"
BASE_URL = "http://testserver"

UPSTREAM_HOST = "s3.test.local"
UPSTREAM_ACCESS_KEY = "upstream-access-key"
UPSTREAM_SECRET_KEY = "upstream-secret-key"
UPSTREAM_REGION = "us-east-1"


# =============================================================================
# Inbound request signing (botocore)
# =============================================================================


def sign_headers(
    method: str,
    url: str,
    *,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    access_key: str = TEST_ACCESS_KEY,
    secret_key: str = TEST_SECRET_KEY,
    region: str = TEST_REGION,
) -> dict[str, str]:
    """Return request headers carrying a header-auth SigV4 signature."""
    if not url.startswith("http"):
        url = BASE_URL + url
    request = AWSRequest(method=method, url=url, data=body, headers=dict(headers or {}))
    S3SigV4Auth(Credentials(access_key, secret_key), "s3", region).add_auth(request)
    return dict(request.headers.items())


def presign_url(
    method: str,
    url: str,
    *,
    expires: int = 300,
    access_key: str = TEST_ACCESS_KEY,
    secret_key: str = TEST_SECRET_KEY,
    region: str = TEST_REGION,
) -> str:
    """Return a pre-signed URL (query auth)."""
    if not url.startswith("http"):
        url = BASE_URL + url
    request = AWSRequest(method=method, url=url)
    S3SigV4QueryAuth(Credentials(access_key, secret_key), "s3", region, expires=expires).add_auth(request)
    return request.url


# =============================================================================
# Fake S3-compatible upstream
# =============================================================================


class FakeS3Upstream:
    """In-memory S3 endpoint that rejects requests with a bad signature."""

    def __init__(self):
        self.objects: dict[tuple[str, str], dict] = {}
        self.requests: list[httpx.Request] = []
        self.signature_failures = 0
        self.fail_with: int | None = None

    def count(self, method: str, path: str | None = None) -> int:
        return sum(
            1 for r in self.requests
            if r.method == method and (path is None or r.url.path == path)
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        parts = RequestParts.from_url(request.method, str(request.url), dict(request.headers))
        if not verify_signature(parts, UPSTREAM_ACCESS_KEY, UPSTREAM_SECRET_KEY, UPSTREAM_REGION):
            self.signature_failures += 1
            return httpx.Response(403, text="SignatureDoesNotMatch")

        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="upstream exploded")

        bucket, _, key = request.url.path.lstrip("/").partition("/")

        if not key:
            if request.method == "GET":
                return self._list(bucket)
            return httpx.Response(405)

        obj = self.objects.get((bucket, key))

        if request.method == "PUT":
            body = request.content
            etag = f'"{hashlib.md5(body).hexdigest()}"'
            self.objects[(bucket, key)] = {
                "body": body,
                "content_type": request.headers.get("content-type", "binary/octet-stream"),
                "etag": etag,
                "last_modified": "Wed, 01 Jan 2025 12:00:00 GMT",
            }
            return httpx.Response(200, headers={"ETag": etag})

        if request.method == "DELETE":
            self.objects.pop((bucket, key), None)
            return httpx.Response(204)

        if obj is None:
            return httpx.Response(
                404,
                content=b"<Error><Code>NoSuchKey</Code></Error>",
                headers={"Content-Type": "application/xml"},
            )

        headers = {
            "Content-Type": obj["content_type"],
            "ETag": obj["etag"],
            "Last-Modified": obj["last_modified"],
        }
        if request.method == "HEAD":
            headers["Content-Length"] = str(len(obj["body"]))
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, content=obj["body"], headers=headers)

    def _list(self, bucket: str) -> httpx.Response:
        ns = "http://s3.amazonaws.com/doc/2006-03-01/"
        root = ET.Element("ListBucketResult", xmlns=ns)
        ET.SubElement(root, "Name").text = bucket
        ET.SubElement(root, "IsTruncated").text = "false"
        for (obj_bucket, key), obj in sorted(self.objects.items()):
            if obj_bucket != bucket:
                continue
            contents = ET.SubElement(root, "Contents")
            ET.SubElement(contents, "Key").text = key
            ET.SubElement(contents, "LastModified").text = "2025-01-01T12:00:00.000Z"
            ET.SubElement(contents, "ETag").text = obj["etag"]
            ET.SubElement(contents, "Size").text = str(len(obj["body"]))
            ET.SubElement(contents, "StorageClass").text = "STANDARD"
        return httpx.Response(
            200,
            content=ET.tostring(root, encoding="unicode").encode(),
            headers={"Content-Type": "application/xml"},
        )


# =============================================================================
# Fake Google Drive
# =============================================================================

_NAME_RE = re.compile(r"name='((?:[^'\\]|\\.)*)'")
_PARENT_RE = re.compile(r"'((?:[^'\\]|\\.)*)' in parents")
_MIME_RE = re.compile(r"mimeType(!?=)'([^']*)'")


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


class FakeDrive:
    """In-memory Drive v3 files API."""

    API = "https://www.googleapis.com/drive/v3"
    UPLOAD = "https://www.googleapis.com/upload/drive/v3"

    def __init__(self):
        self.items: dict[str, dict] = {}
        self.contents: dict[str, bytes] = {}
        self.sessions: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_uploads_with: int | None = None
        self._ids = itertools.count(1)

    # -- helpers for tests ---------------------------------------------------

    def count(self, method: str, path_prefix: str = "") -> int:
        return sum(
            1 for r in self.requests
            if r.method == method and r.url.path.startswith(path_prefix)
        )

    @property
    def folder_creations(self) -> int:
        return sum(
            1 for r in self.requests
            if r.method == "POST" and r.url.path == "/drive/v3/files"
        )

    @property
    def searches(self) -> int:
        return sum(
            1 for r in self.requests
            if r.method == "GET" and r.url.path == "/drive/v3/files"
        )

    def add_item(self, name: str, parent: str = "root", *, folder: bool = False, content: bytes = b"",
                 mime_type: str = "text/plain") -> str:
        item_id = f"{'folder' if folder else 'file'}-{next(self._ids)}"
        item = {
            "id": item_id,
            "name": name,
            "mimeType": FOLDER_MIME_TYPE if folder else mime_type,
            "parents": [parent],
            "trashed": False,
            "modifiedTime": "2025-01-01T12:00:00.000Z",
        }
        if not folder:
            item["size"] = str(len(content))
            item["md5Checksum"] = hashlib.md5(content).hexdigest()
            self.contents[item_id] = content
        self.items[item_id] = item
        return item_id

    def children(self, parent: str) -> list[dict]:
        return sorted(
            (i for i in self.items.values() if parent in i["parents"] and not i["trashed"]),
            key=lambda i: i["name"],
        )

    def find_path(self, *names: str, parent: str = "root") -> dict | None:
        """Walk names from ``parent`` and return the final item."""
        item = None
        for name in names:
            matches = [i for i in self.children(parent) if i["name"] == name]
            if not matches:
                return None
            item = matches[0]
            parent = item["id"]
        return item

    # -- transport -------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if not request.headers.get("authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"error": {"code": 401, "message": "Login Required"}})

        path = request.url.path
        params = request.url.params

        if path.startswith("/upload/drive/v3/files"):
            return self._upload(request, path, params)

        if path == "/drive/v3/files":
            if request.method == "GET":
                return self._search(params)
            if request.method == "POST":
                meta = json.loads(request.content)
                parent = meta["parents"][0]
                if parent != "root" and parent not in self.items:
                    return httpx.Response(404, json={"error": {"code": 404}})
                item_id = self.add_item(meta["name"], parent, folder=True)
                return httpx.Response(200, json=self.items[item_id])

        if path.startswith("/drive/v3/files/"):
            item_id = path.rsplit("/", 1)[1]
            item = self.items.get(item_id)
            if item is None:
                return httpx.Response(404, json={"error": {"code": 404, "message": "File not found"}})
            if request.method == "DELETE":
                del self.items[item_id]
                self.contents.pop(item_id, None)
                return httpx.Response(204)
            if request.method == "GET":
                if params.get("alt") == "media":
                    return httpx.Response(
                        200,
                        content=self.contents.get(item_id, b""),
                        headers={"Content-Type": item["mimeType"]},
                    )
                return httpx.Response(200, json=item)

        return httpx.Response(400, json={"error": {"code": 400}})

    def _search(self, params) -> httpx.Response:
        query = params.get("q", "")
        name_match = _NAME_RE.search(query)
        parent_match = _PARENT_RE.search(query)
        mime_match = _MIME_RE.search(query)

        parent = _unescape(parent_match.group(1)) if parent_match else "root"
        results = self.children(parent)
        if name_match:
            name = _unescape(name_match.group(1))
            results = [i for i in results if i["name"] == name]
        if mime_match:
            op, mime = mime_match.groups()
            if op == "=":
                results = [i for i in results if i["mimeType"] == mime]
            else:
                results = [i for i in results if i["mimeType"] != mime]

        page_size = int(params.get("pageSize", "100"))
        offset = int(params.get("pageToken", "0"))
        page = results[offset:offset + page_size]
        body: dict = {"files": page}
        if offset + page_size < len(results):
            body["nextPageToken"] = str(offset + page_size)
        return httpx.Response(200, json=body)

    def _upload(self, request: httpx.Request, path: str, params) -> httpx.Response:
        upload_id = params.get("upload_id")

        if upload_id is not None and request.method == "PUT":
            session = self.sessions.pop(upload_id, None)
            if session is None:
                return httpx.Response(404, json={"error": {"code": 404}})
            content = request.content
            if session["existing"]:
                item = self.items[session["existing"]]
                item["size"] = str(len(content))
                item["md5Checksum"] = hashlib.md5(content).hexdigest()
                item["mimeType"] = session["content_type"]
                self.contents[item["id"]] = content
            else:
                item_id = self.add_item(
                    session["name"], session["parent"], content=content, mime_type=session["content_type"]
                )
                item = self.items[item_id]
            return httpx.Response(200, json=item)

        if self.fail_uploads_with is not None:
            return httpx.Response(self.fail_uploads_with, text="quota exceeded")

        meta = json.loads(request.content or b"{}")
        session_id = str(next(self._ids))
        content_type = request.headers.get("x-upload-content-type", "application/octet-stream")

        if request.method == "POST" and path == "/upload/drive/v3/files":
            self.sessions[session_id] = {
                "name": meta["name"],
                "parent": meta["parents"][0],
                "existing": None,
                "content_type": content_type,
            }
            location = f"{self.UPLOAD}/files?uploadType=resumable&upload_id={session_id}"
            return httpx.Response(200, headers={"Location": location})

        if request.method == "PATCH":
            item_id = path.rsplit("/", 1)[1]
            if item_id not in self.items:
                return httpx.Response(404, json={"error": {"code": 404}})
            self.sessions[session_id] = {
                "name": meta.get("name"),
                "parent": None,
                "existing": item_id,
                "content_type": content_type,
            }
            location = f"{self.UPLOAD}/files/{item_id}?uploadType=resumable&upload_id={session_id}"
            return httpx.Response(200, headers={"Location": location})

        return httpx.Response(400, json={"error": {"code": 400}})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def gateway_settings(monkeypatch):
    """Patch settings for an allow-listed test bucket and known credentials."""
    monkeypatch.setattr(settings, "allowed_buckets", f"{TEST_BUCKET}, other-bucket")
    monkeypatch.setattr(settings, "s3_access_key_id", TEST_ACCESS_KEY)
    monkeypatch.setattr(settings, "s3_secret_access_key", TEST_SECRET_KEY)
    monkeypatch.setattr(settings, "s3_region", TEST_REGION)
    monkeypatch.setattr(settings, "s3_sig_v4_max_age_seconds", 900)
    monkeypatch.setattr(settings, "cache_store", "memory")
    monkeypatch.setattr(settings, "storage_backend", "passthrough")
    monkeypatch.setattr(settings, "upstream_endpoint", UPSTREAM_HOST)
    monkeypatch.setattr(settings, "cache_control", "s-maxage=300, no-store")
    return settings


@pytest.fixture
def s3_upstream():
    return FakeS3Upstream()


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def passthrough_backend(s3_upstream):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(s3_upstream.handler))
    return PassthroughBackend(
        http_client,
        endpoint=UPSTREAM_HOST,
        access_key=UPSTREAM_ACCESS_KEY,
        secret_key=UPSTREAM_SECRET_KEY,
        region=UPSTREAM_REGION,
        scheme="https",
    )


@pytest.fixture
def folder_cache():
    return FolderResolutionCache(MemoryStore(), ttl_seconds=3600)


@pytest.fixture
def drive_backend(fake_drive, folder_cache):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_drive.handler))
    client = DriveClient(http_client, DriveTokenProvider(http_client, access_token="test-drive-token"))
    return HierarchicalBackend(client, folder_cache)


@pytest.fixture
def response_cache():
    return ResponseCache(MemoryStore(), ttl_seconds=300, max_object_bytes=1024 * 1024)


@pytest.fixture
def backend(passthrough_backend):
    """Backend served by the ``client`` fixture; override to switch."""
    return passthrough_backend


@pytest.fixture
def client(gateway_settings, backend, response_cache):
    """Create a test client for the FastAPI app wired to in-memory fakes."""
    app.dependency_overrides[get_backend] = lambda: backend
    app.dependency_overrides[get_response_cache] = lambda: response_cache
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
