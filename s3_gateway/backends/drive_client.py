"""Minimal async Google Drive v3 REST client.

Only what the hierarchical backend needs: exact-name lookups under a parent,
folder creation, resumable uploads, media downloads, deletes and child
listings. Requests go through the shared ``httpx.AsyncClient``.

Authentication is either a static access token or an OAuth refresh-token
grant; a 401 from Drive drops the cached token so the next call refreshes it.
Nothing is retried.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from s3_gateway import metrics
from s3_gateway.errors import NotFound, UpstreamFailure

logger = structlog.get_logger()

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ITEM_FIELDS = "id,name,mimeType,parents,size,md5Checksum,modifiedTime,trashed"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
BACKEND_NAME = "drive"

# Refresh this long before the token actually expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def escape_query_value(value: str) -> str:
    """Escape a string literal for the Drive ``q`` search syntax."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _parse_drive_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class DriveItem:
    """A Drive file or folder."""

    id: str
    name: str
    mime_type: str
    parent_id: str | None = None
    size: int | None = None
    md5_checksum: str | None = None
    modified_time: datetime | None = None
    trashed: bool = False

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @classmethod
    def from_api(cls, data: dict) -> "DriveItem":
        parents = data.get("parents") or []
        size = data.get("size")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            parent_id=parents[0] if parents else None,
            size=int(size) if size is not None else None,
            md5_checksum=data.get("md5Checksum"),
            modified_time=_parse_drive_time(data.get("modifiedTime")),
            trashed=bool(data.get("trashed", False)),
        )


class DriveTokenProvider:
    """Supplies Drive access tokens."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        access_token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        token_url: str = DEFAULT_TOKEN_URL,
    ):
        self._http = http_client
        self._static_token = access_token
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._token_url = token_url

        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def can_refresh(self) -> bool:
        return bool(self._client_id and self._client_secret and self._refresh_token)

    async def get_token(self) -> str:
        if self.can_refresh:
            async with self._lock:
                if self._token is None or time.monotonic() >= self._expires_at:
                    await self._refresh()
                return self._token
        if self._static_token:
            return self._static_token
        raise UpstreamFailure("Drive credentials are not configured")

    def invalidate(self) -> None:
        """Forget the cached token (after Drive rejected it)."""
        self._token = None
        self._expires_at = 0.0

    async def _refresh(self) -> None:
        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Token refresh failed: {e}") from e

        metrics.BACKEND_REQUESTS_TOTAL.labels(
            backend=BACKEND_NAME, operation="token_refresh", status_code=str(response.status_code)
        ).inc()

        if response.status_code != 200:
            logger.error("drive_token_refresh_failed", status_code=response.status_code)
            raise UpstreamFailure(f"Token refresh failed: {response.status_code} {response.text}")

        data = response.json()
        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 3600))
        self._expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        logger.info("drive_token_refreshed", expires_in=expires_in)


class DriveClient:
    """Thin wrapper over the Drive v3 files API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: DriveTokenProvider,
        api_url: str = "https://www.googleapis.com/drive/v3",
        upload_url: str = "https://www.googleapis.com/upload/drive/v3",
    ):
        self._http = http_client
        self._tokens = token_provider
        self._api_url = api_url.rstrip("/")
        self._upload_url = upload_url.rstrip("/")

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._tokens.get_token()}"}

    def _observe(self, operation: str, status_code: int, started: float) -> None:
        metrics.BACKEND_REQUESTS_TOTAL.labels(
            backend=BACKEND_NAME, operation=operation, status_code=str(status_code)
        ).inc()
        metrics.BACKEND_REQUEST_DURATION.labels(
            backend=BACKEND_NAME, operation=operation
        ).observe(time.perf_counter() - started)
        if status_code == 401:
            self._tokens.invalidate()

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**kwargs.pop("headers", {}), **(await self._auth_headers())}
        started = time.perf_counter()
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("drive_request_error", operation=operation, error=str(e))
            raise UpstreamFailure(f"Drive {operation} failed: {e}") from e
        self._observe(operation, response.status_code, started)
        return response

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        if response.status_code == 404:
            raise NotFound()
        raise UpstreamFailure(f"{what} failed: {response.status_code} {response.text}")

    async def find_child(self, name: str, parent_id: str, *, folder: bool) -> DriveItem | None:
        """Find a non-trashed child of ``parent_id`` named exactly ``name``."""
        mime_clause = f"mimeType='{FOLDER_MIME_TYPE}'" if folder else f"mimeType!='{FOLDER_MIME_TYPE}'"
        query = (
            f"name='{escape_query_value(name)}' and '{escape_query_value(parent_id)}' in parents "
            f"and {mime_clause} and trashed=false"
        )
        response = await self._request(
            "find",
            "GET",
            f"{self._api_url}/files",
            params={"q": query, "fields": f"files({ITEM_FIELDS})", "spaces": "drive", "pageSize": "10"},
        )
        self._check(response, "Lookup")

        # Drive name matching is not strictly exact; filter again locally
        for raw in response.json().get("files", []):
            if raw.get("name") == name:
                return DriveItem.from_api(raw)
        return None

    async def get_metadata(self, item_id: str) -> DriveItem | None:
        """Metadata for one item, or None if it no longer exists."""
        response = await self._request(
            "get_metadata", "GET", f"{self._api_url}/files/{item_id}", params={"fields": ITEM_FIELDS}
        )
        if response.status_code == 404:
            return None
        self._check(response, "Metadata lookup")
        return DriveItem.from_api(response.json())

    async def create_folder(self, name: str, parent_id: str) -> DriveItem:
        response = await self._request(
            "create_folder",
            "POST",
            f"{self._api_url}/files",
            params={"fields": ITEM_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        if not response.is_success:
            raise UpstreamFailure(f"Folder creation failed: {response.status_code} {response.text}")
        metrics.FOLDERS_CREATED_TOTAL.inc()
        item = DriveItem.from_api(response.json())
        logger.info("folder_created", name=name, parent_id=parent_id, folder_id=item.id)
        return item

    async def start_upload(
        self,
        name: str,
        parent_id: str,
        content_type: str,
        content_length: int | None,
        existing_id: str | None = None,
    ) -> str:
        """Open a resumable upload session and return its URL.

        Creates a new file under ``parent_id``, or replaces the content of
        ``existing_id`` when given.
        """
        headers = {"X-Upload-Content-Type": content_type}
        if content_length is not None:
            headers["X-Upload-Content-Length"] = str(content_length)
        params = {"uploadType": "resumable", "fields": ITEM_FIELDS}

        if existing_id:
            response = await self._request(
                "start_upload",
                "PATCH",
                f"{self._upload_url}/files/{existing_id}",
                params=params,
                headers=headers,
                json={"name": name},
            )
        else:
            response = await self._request(
                "start_upload",
                "POST",
                f"{self._upload_url}/files",
                params=params,
                headers=headers,
                json={"name": name, "parents": [parent_id]},
            )

        if not response.is_success:
            raise UpstreamFailure(f"Upload failed: {response.status_code} {response.text}")

        session_url = response.headers.get("location")
        if not session_url:
            raise UpstreamFailure("Upload failed: no upload session URL returned")
        return session_url

    async def upload_content(
        self,
        session_url: str,
        body: AsyncIterator[bytes],
        content_type: str,
        content_length: int | None,
    ) -> DriveItem:
        """Stream the object body into an open upload session."""
        headers = {"Content-Type": content_type}
        if content_length is not None:
            headers["Content-Length"] = str(content_length)

        response = await self._request("upload", "PUT", session_url, headers=headers, content=body)
        if not response.is_success:
            raise UpstreamFailure(f"Upload failed: {response.status_code} {response.text}")
        return DriveItem.from_api(response.json())

    async def open_media(self, file_id: str) -> httpx.Response:
        """Start a streaming download. The caller must close the response."""
        request = self._http.build_request(
            "GET",
            f"{self._api_url}/files/{file_id}",
            params={"alt": "media"},
            headers=await self._auth_headers(),
        )
        started = time.perf_counter()
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Drive download failed: {e}") from e
        self._observe("download", response.status_code, started)

        if not response.is_success:
            await response.aread()
            await response.aclose()
            self._check(response, "Download")
        return response

    async def delete(self, file_id: str) -> None:
        response = await self._request("delete", "DELETE", f"{self._api_url}/files/{file_id}")
        self._check(response, "Delete")

    async def list_children(self, parent_id: str) -> list[DriveItem]:
        """All non-trashed direct children of a folder, across pages."""
        items: list[DriveItem] = []
        page_token: str | None = None

        while True:
            params = {
                "q": f"'{escape_query_value(parent_id)}' in parents and trashed=false",
                "fields": f"nextPageToken,files({ITEM_FIELDS})",
                "spaces": "drive",
                "pageSize": "1000",
                "orderBy": "name",
            }
            if page_token:
                params["pageToken"] = page_token

            response = await self._request("list", "GET", f"{self._api_url}/files", params=params)
            self._check(response, "Listing")

            data = response.json()
            items.extend(DriveItem.from_api(raw) for raw in data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return items

