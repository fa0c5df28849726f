"""
Blob store: records, streamed handles and the backend contract.

A store is partitioned into named buckets.  Every finalized blob has a
store-assigned identifier, a stored name unique within its bucket, a byte
length and a free-form metadata mapping.  Finalized blobs are immutable;
writing an existing name replaces the previous blob as a whole.
"""
from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from thumbnailer.constants import META_CONTENT_TYPE
from thumbnailer.exceptions import InvalidId

_BLOB_ID_RE = re.compile(r"^[0-9a-f]{1,64}$")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def new_blob_id() -> str:
    return uuid.uuid4().hex


def normalize_blob_id(blob_id: str) -> str:
    """Return the canonical (lower-case) form of an identifier or raise InvalidId."""
    candidate = blob_id.strip().lower()
    if not _BLOB_ID_RE.match(candidate):
        raise InvalidId(blob_id)
    return candidate


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class BlobRecord:
    """One finalized blob and its store-side metadata."""

    blob_id: str
    bucket: str
    name: str
    length: int
    metadata: dict[str, Any] = field(default_factory=dict)
    uploaded_at: datetime = field(default_factory=utc_now)

    @property
    def content_type(self) -> str:
        return self.metadata.get(META_CONTENT_TYPE) or DEFAULT_CONTENT_TYPE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.blob_id,
            "bucket": self.bucket,
            "name": self.name,
            "length": self.length,
            "metadata": dict(self.metadata),
            "uploadedAt": self.uploaded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlobRecord:
        return cls(
            blob_id=data["id"],
            bucket=data["bucket"],
            name=data["name"],
            length=int(data["length"]),
            metadata=dict(data.get("metadata") or {}),
            uploaded_at=datetime.fromisoformat(data["uploadedAt"]),
        )


class WriteHandle(ABC):
    """A streamed upload.  Nothing is visible to readers until finalize().

    Used as an async context manager, leaving the block without finalizing
    (normally or through an exception) aborts the upload.
    """

    def __init__(
        self,
        bucket: str,
        name: str,
        metadata: dict[str, Any],
        blob_id: str,
    ) -> None:
        self.bucket = bucket
        self.name = name
        self.metadata = dict(metadata)
        self.blob_id = blob_id
        self.length = 0
        self.record: BlobRecord | None = None
        self._state = "open"

    @property
    def is_open(self) -> bool:
        return self._state == "open"

    async def write(self, chunk: bytes) -> None:
        self._require_open()
        if not chunk:
            return
        self.length += len(chunk)
        await self._write(chunk)

    async def finalize(self) -> str:
        """Commit the upload and return the new record's identifier."""
        self._require_open()
        record = BlobRecord(
            blob_id=self.blob_id,
            bucket=self.bucket,
            name=self.name,
            length=self.length,
            metadata=self.metadata,
        )
        try:
            await self._commit(record)
        except BaseException:
            await self.abort()
            raise
        self._state = "finalized"
        self.record = record
        return record.blob_id

    async def abort(self) -> None:
        if self._state != "open":
            return
        self._state = "aborted"
        await self._abort()

    async def __aenter__(self) -> WriteHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.abort()

    def _require_open(self) -> None:
        if self._state != "open":
            raise RuntimeError(f"Upload of {self.bucket}/{self.name} is already {self._state}")

    @abstractmethod
    async def _write(self, chunk: bytes) -> None: ...

    @abstractmethod
    async def _commit(self, record: BlobRecord) -> None: ...

    @abstractmethod
    async def _abort(self) -> None: ...


class ReadHandle(ABC):
    """A streamed download: a finite, single-pass async sequence of chunks."""

    def __init__(
        self,
        bucket: str,
        name: str,
        *,
        content_type: str,
        length: int,
        blob_id: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.name = name
        self.content_type = content_type
        self.length = length
        self.blob_id = blob_id
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError(
                f"Download of {self.bucket}/{self.name} was already consumed; open a new one"
            )
        self._consumed = True
        return self._iter_chunks()

    async def aclose(self) -> None:
        """Release the underlying stream. Safe to call more than once."""

    @abstractmethod
    def _iter_chunks(self) -> AsyncIterator[bytes]: ...


class BlobStore(ABC):
    """Backend contract shared by the S3 and in-memory stores."""

    async def connect(self) -> None:
        """Open network resources. The in-memory store has none."""

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> BlobStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def open_write(
        self,
        bucket: str,
        name: str,
        metadata: dict[str, Any],
        *,
        blob_id: str | None = None,
    ) -> WriteHandle:
        """Begin a streamed upload.  ``blob_id`` overrides the assigned id."""

    @abstractmethod
    async def open_read(self, bucket: str, name: str) -> ReadHandle:
        """Begin a streamed download by stored name.  Raises NotFound."""

    @abstractmethod
    async def find_by_id(self, bucket: str, blob_id: str) -> BlobRecord:
        """Resolve an identifier.  Raises InvalidId or NotFound."""

    @abstractmethod
    async def exists(self, bucket: str, name: str) -> bool: ...
