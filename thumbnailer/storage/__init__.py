from thumbnailer.config import Settings
from thumbnailer.storage.base import (
    BlobRecord,
    BlobStore,
    ReadHandle,
    WriteHandle,
    new_blob_id,
    normalize_blob_id,
)
from thumbnailer.storage.memory_store import MemoryBlobStore
from thumbnailer.storage.s3_store import S3BlobStore


def open_blob_store(settings: Settings) -> BlobStore:
    """Build the configured store. Call ``connect()`` (or ``async with``) before use."""
    if settings.blob_backend == "memory":
        return MemoryBlobStore(chunk_size=settings.read_chunk_size)
    if settings.blob_backend == "s3":
        return S3BlobStore.from_settings(settings)
    raise ValueError(f"Unknown blob backend: {settings.blob_backend!r}")


__all__ = [
    "BlobRecord",
    "BlobStore",
    "MemoryBlobStore",
    "ReadHandle",
    "S3BlobStore",
    "WriteHandle",
    "new_blob_id",
    "normalize_blob_id",
    "open_blob_store",
]
