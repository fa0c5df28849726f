"""
Photos: controller layer.

Receives validated input from the router, talks to the blob store and the
queue, composes the response.  Domain errors are translated into HTTP
exceptions here.
"""
from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from fastapi.responses import StreamingResponse

from thumbnailer.constants import (
    IMAGE_TYPES,
    META_BUSINESS_ID,
    META_CAPTION,
    META_CONTENT_TYPE,
)
from thumbnailer.exceptions import (
    InvalidId,
    MediaFileNotFound,
    NotFound,
    PhotoNotFound,
    QueueError,
    QueueUnavailable,
    StorageUnavailable,
    StoreUnavailable,
    UnsupportedContentType,
    UploadFileTooLarge,
)
from thumbnailer.photos.schemas import PhotoCreatedResponse, PhotoLinks, PhotoResponse
from thumbnailer.worker import derivative_name

if TYPE_CHECKING:
    from fastapi import UploadFile

    from thumbnailer.config import Settings
    from thumbnailer.queue import QueueConnection
    from thumbnailer.storage import BlobStore

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


def _stored_filename(content_type: str) -> str:
    return f"{secrets.token_hex(16)}.{IMAGE_TYPES[content_type]}"


async def create_photo(
    image: UploadFile,
    business_id: str,
    caption: str | None,
    store: BlobStore,
    connection: QueueConnection,
    settings: Settings,
) -> PhotoCreatedResponse:
    """Store the original, then publish its id for thumbnailing."""
    if image.content_type not in IMAGE_TYPES:
        raise UnsupportedContentType(image.content_type)

    metadata = {
        META_CONTENT_TYPE: image.content_type,
        META_BUSINESS_ID: business_id,
    }
    if caption:
        metadata[META_CAPTION] = caption

    limit = settings.max_original_bytes
    try:
        async with await store.open_write(
            settings.originals_bucket, _stored_filename(image.content_type), metadata,
        ) as upload:
            while True:
                chunk = await image.read(settings.read_chunk_size)
                if not chunk:
                    break
                if upload.length + len(chunk) > limit:
                    raise UploadFileTooLarge(limit // _MB)
                await upload.write(chunk)
            photo_id = await upload.finalize()
    except StoreUnavailable:
        logger.exception("Could not store upload for business %s", business_id)
        raise StorageUnavailable()

    # The original is durable and readable before the trigger goes out.
    try:
        await connection.declare_queue(settings.queue_name)
        await connection.publish(settings.queue_name, photo_id.encode("utf-8"))
    except QueueError:
        logger.exception("Could not enqueue thumbnail job for photo %s", photo_id)
        raise QueueUnavailable()

    logger.info("Stored photo %s (%d bytes) and queued thumbnail", photo_id, upload.length)
    return PhotoCreatedResponse(
        id=photo_id,
        links=PhotoLinks(
            photo=f"/photos/{photo_id}",
            business=f"/businesses/{business_id}",
        ),
    )


async def get_photo(photo_id: str, store: BlobStore, settings: Settings) -> PhotoResponse:
    try:
        record = await store.find_by_id(settings.originals_bucket, photo_id)
    except (InvalidId, NotFound):
        raise PhotoNotFound()
    except StoreUnavailable:
        raise StorageUnavailable()

    return PhotoResponse(
        id=record.blob_id,
        url=f"/media/images/{record.name}",
        thumbnail_url=f"/media/thumbs/{derivative_name(record.blob_id)}",
        content_type=record.content_type,
        business_id=str(record.metadata.get(META_BUSINESS_ID, "")),
        caption=record.metadata.get(META_CAPTION),
        size=record.length,
    )


async def stream_media(bucket: str, filename: str, store: BlobStore) -> StreamingResponse:
    """Stream a stored blob with its stored content type."""
    try:
        download = await store.open_read(bucket, filename)
    except NotFound:
        raise MediaFileNotFound()
    except StoreUnavailable:
        raise StorageUnavailable()

    # Stored blobs are immutable: cache aggressively.
    return StreamingResponse(
        download,
        media_type=download.content_type,
        headers={
            "Cache-Control": "public, max-age=31536000, immutable",
            "Content-Length": str(download.length),
        },
    )
