"""In-process blob store for local development and tests."""
from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from thumbnailer.exceptions import NotFound, StoreUnavailable
from thumbnailer.storage.base import (
    BlobRecord,
    BlobStore,
    ReadHandle,
    WriteHandle,
    new_blob_id,
    normalize_blob_id,
)


class _MemoryWriteHandle(WriteHandle):
    def __init__(self, store: MemoryBlobStore, bucket: str, name: str,
                 metadata: dict[str, Any], blob_id: str) -> None:
        super().__init__(bucket, name, metadata, blob_id)
        self._store = store
        self._chunks: list[bytes] = []

    async def _write(self, chunk: bytes) -> None:
        self._store._check_available()
        self._chunks.append(bytes(chunk))

    async def _commit(self, record: BlobRecord) -> None:
        self._store._check_available()
        self._store._put(record, b"".join(self._chunks))
        self._chunks = []

    async def _abort(self) -> None:
        self._chunks = []


class _MemoryReadHandle(ReadHandle):
    def __init__(self, record: BlobRecord, data: bytes, chunk_size: int) -> None:
        super().__init__(
            record.bucket,
            record.name,
            content_type=record.content_type,
            length=record.length,
            blob_id=record.blob_id,
        )
        self._data = data
        self._chunk_size = chunk_size

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        for offset in range(0, len(self._data), self._chunk_size):
            yield self._data[offset:offset + self._chunk_size]


class MemoryBlobStore(BlobStore):
    """Dict-backed store.  Set ``available = False`` to simulate an outage."""

    def __init__(self, chunk_size: int = 64 * 1024) -> None:
        self.chunk_size = chunk_size
        self.available = True
        # bucket -> name -> (record, data)
        self._blobs: dict[str, dict[str, tuple[BlobRecord, bytes]]] = {}
        # bucket -> id -> name
        self._ids: dict[str, dict[str, str]] = {}

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("In-memory store marked unavailable")

    def _put(self, record: BlobRecord, data: bytes) -> None:
        blobs = self._blobs.setdefault(record.bucket, {})
        ids = self._ids.setdefault(record.bucket, {})
        previous = blobs.get(record.name)
        if previous is not None and previous[0].blob_id != record.blob_id:
            ids.pop(previous[0].blob_id, None)
        blobs[record.name] = (record, data)
        ids[record.blob_id] = record.name

    async def open_write(
        self,
        bucket: str,
        name: str,
        metadata: dict[str, Any],
        *,
        blob_id: str | None = None,
    ) -> WriteHandle:
        self._check_available()
        blob_id = normalize_blob_id(blob_id) if blob_id else new_blob_id()
        return _MemoryWriteHandle(self, bucket, name, metadata, blob_id)

    async def open_read(self, bucket: str, name: str) -> ReadHandle:
        self._check_available()
        try:
            record, data = self._blobs[bucket][name]
        except KeyError:
            raise NotFound(bucket, name) from None
        return _MemoryReadHandle(record, data, self.chunk_size)

    async def find_by_id(self, bucket: str, blob_id: str) -> BlobRecord:
        blob_id = normalize_blob_id(blob_id)
        self._check_available()
        name = self._ids.get(bucket, {}).get(blob_id)
        if name is None:
            raise NotFound(bucket, blob_id)
        return self._blobs[bucket][name][0]

    async def exists(self, bucket: str, name: str) -> bool:
        self._check_available()
        return name in self._blobs.get(bucket, {})

    def records(self, bucket: str) -> list[BlobRecord]:
        """Snapshot of every finalized record in a bucket."""
        return [record for record, _ in self._blobs.get(bucket, {}).values()]
