"""Folder resolution cache and HTTP response cache.

Both live on a shared ``KeyValueStore``. Neither takes locks across requests:
consistency is best-effort and a failing store degrades to a cache miss.

Response cache rules:
- Only successful GET responses are stored, after the body has been sent.
- HEAD is served from a stored GET entry (same headers, no body).
- PUT/DELETE invalidate before the backend call, whatever its outcome, and
  again once it has finished.
- Every invalidation writes a fresh generation marker next to the entry. A
  GET captures the marker before reading the backend and only stores its
  body if the marker is unchanged afterwards, so a read that overlapped a
  mutation never repopulates the cache with the old body.
- Keys are derived from (bucket, key) only, never from auth material, so
  differently signed requests for the same object share an entry.
"""

import asyncio
import base64
import json
import uuid
from collections.abc import AsyncIterator, Coroutine, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from s3_gateway import metrics
from s3_gateway.stores import KeyValueStore

logger = structlog.get_logger()

FOLDER_KEY_PREFIX = "folder:"
RESPONSE_KEY_PREFIX = "response:object:"
GENERATION_KEY_PREFIX = "response:generation:"

# Marker value when the store could not be read; such GETs are not stored
GENERATION_UNAVAILABLE = "unavailable"


class FolderResolutionCache:
    """Maps (bucket, folder path) to the backend folder ID."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 3600):
        self._store = store
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(bucket: str, folders: Sequence[str]) -> str:
        """``folder:{bucket}`` for the bucket folder, ``folder:{bucket}/a/b`` below it."""
        return FOLDER_KEY_PREFIX + "/".join([bucket, *folders])

    async def get(self, bucket: str, folders: Sequence[str]) -> str | None:
        key = self.cache_key(bucket, folders)
        try:
            value = await self._store.get(key)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="get").inc()
            logger.warning("folder_cache_get_failed", key=key, error=str(e))
            return None

        if value is None:
            metrics.FOLDER_CACHE_MISSES.inc()
            return None
        metrics.FOLDER_CACHE_HITS.inc()
        return value.decode()

    async def put(self, bucket: str, folders: Sequence[str], folder_id: str) -> None:
        key = self.cache_key(bucket, folders)
        try:
            await self._store.put(key, folder_id.encode(), self._ttl_seconds)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="put").inc()
            logger.warning("folder_cache_put_failed", key=key, error=str(e))

    async def evict(self, bucket: str, folders: Sequence[str]) -> None:
        key = self.cache_key(bucket, folders)
        try:
            await self._store.delete(key)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="delete").inc()
            logger.warning("folder_cache_evict_failed", key=key, error=str(e))


@dataclass
class CachedResponse:
    """A complete HTTP response as stored in the cache."""

    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    def to_bytes(self) -> bytes:
        return json.dumps({
            "status_code": self.status_code,
            "headers": [[k, v] for k, v in self.headers],
            "body": base64.b64encode(self.body).decode("ascii"),
        }).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "CachedResponse":
        raw = json.loads(data)
        return cls(
            status_code=raw["status_code"],
            headers=[(k, v) for k, v in raw["headers"]],
            body=base64.b64decode(raw["body"]),
        )


class BodyRecorder:
    """Copies a streamed body as it passes through, up to ``limit`` bytes."""

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self.complete = False
        self.overflow = False
        self._chunks: list[bytes] = []

    async def tee(self, body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for chunk in body:
            self.size += len(chunk)
            if not self.overflow:
                if self.size > self.limit:
                    self.overflow = True
                    self._chunks.clear()
                else:
                    self._chunks.append(chunk)
            yield chunk
        self.complete = True

    @property
    def body(self) -> bytes | None:
        """Recorded body, or None if the stream was cut short or too large."""
        if not self.complete or self.overflow:
            return None
        return b"".join(self._chunks)


class ResponseCache:
    """Cache of full GET responses keyed by (bucket, key)."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = 300,
        max_object_bytes: int = 10 * 1024 * 1024,
        enabled: bool = True,
        generation_ttl_seconds: int = 3600,
    ):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._generation_ttl_seconds = max(generation_ttl_seconds, ttl_seconds)
        self.max_object_bytes = max_object_bytes
        self.enabled = enabled
        self._pending: set[asyncio.Task] = set()

    @staticmethod
    def cache_key(bucket: str, key: str) -> str:
        return f"{RESPONSE_KEY_PREFIX}{bucket}/{key}"

    @staticmethod
    def generation_key(bucket: str, key: str) -> str:
        return f"{GENERATION_KEY_PREFIX}{bucket}/{key}"

    async def generation(self, bucket: str, key: str) -> str | None:
        """Current invalidation marker for (bucket, key), None if never invalidated.

        Capture it before reading the backend and hand it to ``store_recorded``.
        """
        marker_key = self.generation_key(bucket, key)
        try:
            data = await self._store.get(marker_key)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="get").inc()
            logger.warning("response_cache_generation_get_failed", key=marker_key, error=str(e))
            return GENERATION_UNAVAILABLE
        return data.decode() if data is not None else None

    async def _unchanged_since(self, bucket: str, key: str, generation: str | None) -> bool:
        if generation == GENERATION_UNAVAILABLE:
            return False
        current = await self.generation(bucket, key)
        return current != GENERATION_UNAVAILABLE and current == generation

    @staticmethod
    def is_cacheable(status_code: int) -> bool:
        return 200 <= status_code < 300

    async def lookup(self, bucket: str, key: str) -> CachedResponse | None:
        if not self.enabled:
            return None

        cache_key = self.cache_key(bucket, key)
        try:
            data = await self._store.get(cache_key)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="get").inc()
            logger.warning("response_cache_get_failed", key=cache_key, error=str(e))
            return None

        if data is None:
            return None

        try:
            return CachedResponse.from_bytes(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("response_cache_entry_corrupt", key=cache_key, error=str(e))
            return None

    async def store(self, bucket: str, key: str, response: CachedResponse) -> None:
        """Write an entry. Runs in the background, failures are only logged."""
        if not self.enabled or not self.is_cacheable(response.status_code):
            return
        if len(response.body) > self.max_object_bytes:
            logger.debug("response_cache_skip_large", bucket=bucket, key=key, size=len(response.body))
            return

        cache_key = self.cache_key(bucket, key)
        try:
            await self._store.put(cache_key, response.to_bytes(), self._ttl_seconds)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="put").inc()
            logger.warning("response_cache_put_failed", key=cache_key, error=str(e))
            return

        metrics.RESPONSE_CACHE_STORES.inc()
        logger.debug("response_cache_stored", bucket=bucket, key=key, size=len(response.body))

    async def store_recorded(
        self,
        bucket: str,
        key: str,
        status_code: int,
        headers: list[tuple[str, str]],
        recorder: BodyRecorder,
        generation: str | None = None,
    ) -> None:
        """Store a streamed GET response once its body has been fully sent.

        ``generation`` is the marker captured before the backend read. If the
        key was invalidated since, the body may predate the mutation and is
        dropped. A mutation landing between the check and the write is caught
        by checking again afterwards and removing the entry.
        """
        body = recorder.body
        if body is None:
            logger.debug(
                "response_cache_skip_incomplete",
                bucket=bucket,
                key=key,
                overflow=recorder.overflow,
                complete=recorder.complete,
            )
            return

        if not await self._unchanged_since(bucket, key, generation):
            logger.debug("response_cache_skip_invalidated", bucket=bucket, key=key)
            return

        await self.store(bucket, key, CachedResponse(status_code=status_code, headers=headers, body=body))

        if not await self._unchanged_since(bucket, key, generation):
            logger.debug("response_cache_store_raced", bucket=bucket, key=key)
            await self._delete(self.cache_key(bucket, key))

    async def invalidate(self, bucket: str, key: str) -> None:
        """Write a new generation marker and schedule removal of the entry.

        The marker write is awaited, so any GET that captured the previous
        marker will not store its body. The entry delete runs as its own task;
        this only yields once so the task starts before the caller continues.
        """
        cache_key = self.cache_key(bucket, key)
        marker_key = self.generation_key(bucket, key)
        metrics.RESPONSE_CACHE_INVALIDATIONS.inc()

        try:
            await self._store.put(marker_key, uuid.uuid4().hex.encode(), self._generation_ttl_seconds)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="put").inc()
            logger.warning("response_cache_generation_put_failed", key=marker_key, error=str(e))

        self._spawn(self._delete(cache_key))
        await asyncio.sleep(0)

    async def _delete(self, cache_key: str) -> None:
        try:
            await self._store.delete(cache_key)
            logger.debug("response_cache_invalidated", key=cache_key)
        except Exception as e:
            metrics.CACHE_STORE_ERRORS.labels(operation="delete").inc()
            logger.warning("response_cache_invalidate_failed", key=cache_key, error=str(e))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled invalidations (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
