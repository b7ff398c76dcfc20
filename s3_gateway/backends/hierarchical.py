"""Object storage on top of Google Drive folders.

Drive has no buckets and no flat keys, only items with opaque IDs that point
at their parent folders. An object ``(bucket, "a/b/file.txt")`` lives at:

    <root folder> / bucket / a / b / file.txt

Every folder hop costs a Drive search, so folder IDs are kept in the
FolderResolutionCache under ``folder:{bucket}/a/b``. The cache is only a hint:
- once one hop had to be looked up in Drive, deeper cached IDs are not used
  for that call (they may belong to an older folder of the same name);
- before an upload, the last cached folder on the chain is re-read from
  Drive (before creating anything under it, or before writing into it when
  the whole chain was cached) and the chain is resolved again if it is gone.

Concurrent first writes into the same new folder can still create two
folders with the same name; later lookups pick whichever Drive returns first.
"""

from collections.abc import AsyncIterator, Sequence

import structlog

from s3_gateway.backends.base import (
    DEFAULT_CONTENT_TYPE,
    ListResult,
    ObjectEntry,
    StoredObject,
    iter_response,
    quote_etag,
    split_key,
)
from s3_gateway.backends.drive_client import DriveClient, DriveItem
from s3_gateway.cache import FolderResolutionCache
from s3_gateway.errors import InvalidRequest, NotFound
from s3_gateway.models.responses import PutObjectResponse

logger = structlog.get_logger()


class HierarchicalBackend:
    """Storage backend that maps keys onto a Drive folder tree."""

    name = "drive"

    def __init__(
        self,
        client: DriveClient,
        folder_cache: FolderResolutionCache,
        root_folder_id: str = "root",
    ):
        self.client = client
        self.folder_cache = folder_cache
        self.root_folder_id = root_folder_id

    async def _is_live_folder(self, folder_id: str) -> bool:
        folder = await self.client.get_metadata(folder_id)
        return folder is not None and not folder.trashed and folder.is_folder

    async def _resolve_chain(
        self,
        bucket: str,
        folders: Sequence[str],
        create_if_missing: bool,
        use_cache: bool,
    ) -> str | None:
        """Walk ``[bucket, *folders]`` from the root folder and return the last folder ID.

        With ``create_if_missing``, the last folder taken from the cache is
        read back from Drive before anything is created under it, or before
        it is returned when the whole chain was cached. None means that
        folder is gone and the cached chain is stale.
        """
        chain = [bucket, *folders]
        parent_id = self.root_folder_id
        trust_cache = use_cache
        from_cache = False

        for depth, name in enumerate(chain):
            path = chain[1:depth + 1]

            if trust_cache:
                cached_id = await self.folder_cache.get(bucket, path)
                if cached_id is not None:
                    parent_id = cached_id
                    from_cache = True
                    continue

                trust_cache = False
                if from_cache and create_if_missing and not await self._is_live_folder(parent_id):
                    return None

            from_cache = False

            item = await self.client.find_child(name, parent_id, folder=True)
            if item is None:
                if not create_if_missing:
                    logger.debug("folder_not_found", bucket=bucket, path="/".join(chain[:depth + 1]))
                    raise NotFound()
                item = await self.client.create_folder(name, parent_id)

            await self.folder_cache.put(bucket, path, item.id)
            parent_id = item.id

        if from_cache and create_if_missing and not await self._is_live_folder(parent_id):
            return None
        return parent_id

    async def _evict_chain(self, bucket: str, folders: Sequence[str]) -> None:
        for depth in range(len(folders) + 1):
            await self.folder_cache.evict(bucket, folders[:depth])

    async def resolve_path(self, bucket: str, key: str, create_if_missing: bool) -> tuple[str, str]:
        """Resolve an object key to ``(parent_folder_id, leaf_name)``.

        Raises:
            InvalidRequest: the key has no segments
            NotFound: a folder is missing and ``create_if_missing`` is False
        """
        segments = split_key(key)
        if not segments:
            raise InvalidRequest()
        folders, leaf = segments[:-1], segments[-1]

        folder_id = await self._resolve_chain(bucket, folders, create_if_missing, use_cache=True)

        if folder_id is None:
            logger.warning("folder_cache_stale", bucket=bucket, path="/".join(folders))
            await self._evict_chain(bucket, folders)
            folder_id = await self._resolve_chain(bucket, folders, create_if_missing, use_cache=False)

        return folder_id, leaf

    async def _lookup_file(self, bucket: str, key: str) -> DriveItem:
        parent_id, name = await self.resolve_path(bucket, key, create_if_missing=False)
        item = await self.client.find_child(name, parent_id, folder=False)
        if item is None:
            raise NotFound()
        return item

    @staticmethod
    def _to_stored(item: DriveItem, body: AsyncIterator[bytes] | None = None) -> StoredObject:
        return StoredObject(
            content_type=item.mime_type or DEFAULT_CONTENT_TYPE,
            content_length=item.size,
            etag=quote_etag(item.md5_checksum),
            last_modified=item.modified_time,
            body=body,
        )

    async def put(
        self,
        bucket: str,
        key: str,
        body: AsyncIterator[bytes],
        content_type: str,
        content_length: int | None,
    ) -> PutObjectResponse:
        parent_id, name = await self.resolve_path(bucket, key, create_if_missing=True)

        existing = await self.client.find_child(name, parent_id, folder=False)
        session_url = await self.client.start_upload(
            name,
            parent_id,
            content_type,
            content_length,
            existing_id=existing.id if existing else None,
        )
        item = await self.client.upload_content(session_url, body, content_type, content_length)

        logger.info(
            "drive_object_uploaded",
            bucket=bucket,
            key=key,
            file_id=item.id,
            replaced=existing is not None,
        )
        return PutObjectResponse(etag=quote_etag(item.md5_checksum), id=item.id, name=item.name)

    async def get(self, bucket: str, key: str) -> StoredObject:
        item = await self._lookup_file(bucket, key)
        response = await self.client.open_media(item.id)

        stored = self._to_stored(item, iter_response(response))
        if stored.content_length is None and "content-length" in response.headers:
            stored.content_length = int(response.headers["content-length"])
        return stored

    async def head(self, bucket: str, key: str) -> StoredObject:
        item = await self._lookup_file(bucket, key)
        return self._to_stored(item)

    async def delete(self, bucket: str, key: str) -> None:
        item = await self._lookup_file(bucket, key)
        await self.client.delete(item.id)
        logger.info("drive_object_deleted", bucket=bucket, key=key, file_id=item.id)

    async def list_objects(self, bucket: str) -> ListResult:
        try:
            bucket_id = await self._resolve_chain(bucket, [], create_if_missing=False, use_cache=True)
        except NotFound:
            return ListResult()

        try:
            children = await self.client.list_children(bucket_id)
        except NotFound:
            # Cached bucket folder was removed behind our back
            await self.folder_cache.evict(bucket, [])
            return ListResult()

        result = ListResult()
        for child in children:
            if child.is_folder:
                result.prefixes.append(f"{child.name}/")
            else:
                result.objects.append(
                    ObjectEntry(
                        key=child.name,
                        last_modified=child.modified_time,
                        etag=child.md5_checksum or "",
                        size=child.size or 0,
                    )
                )
        return result
