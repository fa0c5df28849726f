"""
AWS S3 blob store.

Layout inside the single media bucket (``settings.s3_bucket_media``):

  <bucket>/<name>              blob content, ContentType + ``blob-id`` metadata
  <bucket>/.ids/<blob_id>.json identifier index (the serialized BlobRecord)

Upload flow:
  1. Chunks are buffered up to ``s3_part_size``; once the buffer fills the
     upload is promoted to a multipart upload and flushed part by part.
  2. On finalize the content is committed (single PutObject for small blobs,
     CompleteMultipartUpload otherwise).
  3. The index entry is written last, so an identifier never resolves to
     bytes that are not yet readable.
An aborted multipart upload is discarded by S3 and never becomes visible.
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Any

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from thumbnailer.config import Settings
from thumbnailer.exceptions import NotFound, StoreError, StoreUnavailable
from thumbnailer.storage.base import (
    DEFAULT_CONTENT_TYPE,
    BlobRecord,
    BlobStore,
    ReadHandle,
    WriteHandle,
    new_blob_id,
    normalize_blob_id,
)

logger = logging.getLogger(__name__)

_BLOB_ID_META = "blob-id"
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _store_error(exc: Exception, bucket: str, key: str) -> StoreError:
    """Map a botocore failure onto the store error taxonomy."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in _NOT_FOUND_CODES:
            return NotFound(bucket, key)
    return StoreUnavailable(f"S3 request for {bucket}/{key} failed: {exc}")


class _S3WriteHandle(WriteHandle):
    def __init__(self, store: S3BlobStore, bucket: str, name: str,
                 metadata: dict[str, Any], blob_id: str) -> None:
        super().__init__(bucket, name, metadata, blob_id)
        self._store = store
        self._key = store.content_key(bucket, name)
        self._content_type = self.metadata.get("contentType") or DEFAULT_CONTENT_TYPE
        self._buffer = bytearray()
        self._upload_id: str | None = None
        self._parts: list[dict[str, Any]] = []

    async def _write(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        part_size = self._store.part_size
        while len(self._buffer) >= part_size:
            part = bytes(self._buffer[:part_size])
            del self._buffer[:part_size]
            await self._upload_part(part)

    async def _upload_part(self, data: bytes) -> None:
        s3 = self._store.client
        try:
            if self._upload_id is None:
                response = await s3.create_multipart_upload(
                    Bucket=self._store.media_bucket,
                    Key=self._key,
                    ContentType=self._content_type,
                    Metadata={_BLOB_ID_META: self.blob_id},
                )
                self._upload_id = response["UploadId"]
            part_number = len(self._parts) + 1
            response = await s3.upload_part(
                Bucket=self._store.media_bucket,
                Key=self._key,
                PartNumber=part_number,
                UploadId=self._upload_id,
                Body=data,
            )
        except (BotoCoreError, ClientError) as exc:
            raise _store_error(exc, self.bucket, self.name) from exc
        self._parts.append({"ETag": response["ETag"], "PartNumber": part_number})

    async def _commit(self, record: BlobRecord) -> None:
        s3 = self._store.client
        previous_id = await self._store.current_blob_id(self.bucket, self.name)
        try:
            if self._upload_id is None:
                await s3.put_object(
                    Bucket=self._store.media_bucket,
                    Key=self._key,
                    Body=bytes(self._buffer),
                    ContentType=self._content_type,
                    Metadata={_BLOB_ID_META: self.blob_id},
                )
            else:
                if self._buffer:
                    await self._upload_part(bytes(self._buffer))
                await s3.complete_multipart_upload(
                    Bucket=self._store.media_bucket,
                    Key=self._key,
                    UploadId=self._upload_id,
                    MultipartUpload={"Parts": self._parts},
                )
            self._buffer.clear()
            await s3.put_object(
                Bucket=self._store.media_bucket,
                Key=self._store.index_key(self.bucket, self.blob_id),
                Body=json.dumps(record.to_dict()).encode("utf-8"),
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as exc:
            raise _store_error(exc, self.bucket, self.name) from exc

        if previous_id and previous_id != self.blob_id:
            await self._store.drop_index_entry(self.bucket, previous_id)

    async def _abort(self) -> None:
        self._buffer.clear()
        if self._upload_id is None:
            return
        try:
            await self._store.client.abort_multipart_upload(
                Bucket=self._store.media_bucket,
                Key=self._key,
                UploadId=self._upload_id,
            )
        except (BotoCoreError, ClientError) as exc:
            # S3 lifecycle rules clean up the parts; the blob is never visible.
            logger.error("abort_multipart_upload failed for %s: %s", self._key, exc)


class _S3ReadHandle(ReadHandle):
    def __init__(self, bucket: str, name: str, response: dict[str, Any], chunk_size: int) -> None:
        super().__init__(
            bucket,
            name,
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            length=int(response.get("ContentLength", 0)),
            blob_id=(response.get("Metadata") or {}).get(_BLOB_ID_META),
        )
        self._body = response["Body"]
        self._chunk_size = chunk_size
        self._closed = False

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await self._body.read(self._chunk_size)
                except Exception as exc:
                    # Anything raised mid-stream is a transport failure.
                    raise StoreUnavailable(
                        f"Download of {self.bucket}/{self.name} was interrupted: {exc}"
                    ) from exc
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            self._body.close()


class S3BlobStore(BlobStore):
    """Blob store on one S3 bucket; logical buckets are key prefixes."""

    def __init__(
        self,
        *,
        media_bucket: str,
        session: aioboto3.Session,
        endpoint_url: str | None = None,
        part_size: int = 8 * 1024 * 1024,
        chunk_size: int = 256 * 1024,
    ) -> None:
        self.media_bucket = media_bucket
        self.part_size = part_size
        self.chunk_size = chunk_size
        self._session = session
        self._endpoint_url = endpoint_url
        self._stack: AsyncExitStack | None = None
        self._client: Any = None

    @classmethod
    def from_settings(cls, settings: Settings) -> S3BlobStore:
        session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
            region_name=settings.aws_region,
        )
        return cls(
            media_bucket=settings.s3_bucket_media,
            session=session,
            endpoint_url=settings.s3_endpoint_url,
            part_size=settings.s3_part_size,
            chunk_size=settings.read_chunk_size,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        if self._client is not None:
            return
        stack = AsyncExitStack()
        try:
            self._client = await stack.enter_async_context(
                self._session.client("s3", endpoint_url=self._endpoint_url)
            )
        except BotoCoreError as exc:
            await stack.aclose()
            raise StoreUnavailable(f"Could not create S3 client: {exc}") from exc
        self._stack = stack
        logger.info("S3 blob store connected (bucket=%s)", self.media_bucket)

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._client = None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise RuntimeError("S3BlobStore is not connected")
        return self._client

    # ── Keys ──────────────────────────────────────────────────────────────────

    @staticmethod
    def content_key(bucket: str, name: str) -> str:
        return f"{bucket}/{name}"

    @staticmethod
    def index_key(bucket: str, blob_id: str) -> str:
        return f"{bucket}/.ids/{blob_id}.json"

    # ── BlobStore ─────────────────────────────────────────────────────────────

    async def open_write(
        self,
        bucket: str,
        name: str,
        metadata: dict[str, Any],
        *,
        blob_id: str | None = None,
    ) -> WriteHandle:
        blob_id = normalize_blob_id(blob_id) if blob_id else new_blob_id()
        return _S3WriteHandle(self, bucket, name, metadata, blob_id)

    async def open_read(self, bucket: str, name: str) -> ReadHandle:
        try:
            response = await self.client.get_object(
                Bucket=self.media_bucket, Key=self.content_key(bucket, name),
            )
        except (BotoCoreError, ClientError) as exc:
            raise _store_error(exc, bucket, name) from exc
        return _S3ReadHandle(bucket, name, response, self.chunk_size)

    async def find_by_id(self, bucket: str, blob_id: str) -> BlobRecord:
        blob_id = normalize_blob_id(blob_id)
        try:
            response = await self.client.get_object(
                Bucket=self.media_bucket, Key=self.index_key(bucket, blob_id),
            )
            body = response["Body"]
            try:
                raw = await body.read()
            finally:
                body.close()
        except (BotoCoreError, ClientError) as exc:
            raise _store_error(exc, bucket, blob_id) from exc
        return BlobRecord.from_dict(json.loads(raw))

    async def exists(self, bucket: str, name: str) -> bool:
        return await self.current_blob_id(bucket, name) is not None

    async def current_blob_id(self, bucket: str, name: str) -> str | None:
        """Identifier of the blob currently stored under ``name``, if any."""
        try:
            response = await self.client.head_object(
                Bucket=self.media_bucket, Key=self.content_key(bucket, name),
            )
        except (BotoCoreError, ClientError) as exc:
            error = _store_error(exc, bucket, name)
            if isinstance(error, NotFound):
                return None
            raise error from exc
        return (response.get("Metadata") or {}).get(_BLOB_ID_META, "")

    async def drop_index_entry(self, bucket: str, blob_id: str) -> None:
        """Delete a replaced blob's index entry. Logs instead of raising."""
        try:
            await self.client.delete_object(
                Bucket=self.media_bucket, Key=self.index_key(bucket, blob_id),
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Could not drop index entry %s/%s: %s", bucket, blob_id, exc)
