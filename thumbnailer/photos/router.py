"""
Photos: HTTP routes.

Upload an original, look up its metadata, and serve originals and
thumbnails by stored name.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import StreamingResponse

from thumbnailer.config import Settings
from thumbnailer.dependencies import get_blob_store, get_queue, get_settings
from thumbnailer.photos import controller
from thumbnailer.photos.schemas import PhotoCreatedResponse, PhotoResponse
from thumbnailer.queue import QueueConnection
from thumbnailer.storage import BlobStore

router = APIRouter(tags=["photos"])


@router.post(
    "/photos",
    response_model=PhotoCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a photo",
    description=(
        "Stores the uploaded JPEG or PNG and queues it for thumbnail "
        "generation. The thumbnail appears under /media/thumbs/{id}.jpg "
        "once the worker has processed it."
    ),
)
async def create_photo(
    image: UploadFile = File(description="JPEG or PNG image"),
    business_id: str = Form(alias="businessId", min_length=1, max_length=100),
    caption: str | None = Form(default=None, max_length=1000),
    store: BlobStore = Depends(get_blob_store),
    connection: QueueConnection = Depends(get_queue),
    settings: Settings = Depends(get_settings),
) -> PhotoCreatedResponse:
    return await controller.create_photo(image, business_id, caption, store, connection, settings)


@router.get(
    "/photos/{photo_id}",
    response_model=PhotoResponse,
    summary="Get photo details",
)
async def get_photo(
    photo_id: str,
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> PhotoResponse:
    return await controller.get_photo(photo_id, store, settings)


@router.get(
    "/media/images/{filename}",
    summary="Download an original",
    response_class=StreamingResponse,
)
async def get_original(
    filename: str,
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    return await controller.stream_media(settings.originals_bucket, filename, store)


@router.get(
    "/media/thumbs/{filename}",
    summary="Download a thumbnail",
    response_class=StreamingResponse,
)
async def get_thumbnail(
    filename: str,
    store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    return await controller.stream_media(settings.derivatives_bucket, filename, store)
