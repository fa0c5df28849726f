import io
from collections.abc import Awaitable, Callable

import pytest
from PIL import Image

from thumbnailer.config import Settings
from thumbnailer.queue import MemoryBroker, MemoryQueueConnection
from thumbnailer.storage import MemoryBlobStore


def _image_bytes(
    width: int = 400,
    height: int = 300,
    fmt: str = "JPEG",
    mode: str = "RGB",
    color: tuple = (200, 30, 30),
) -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    return _image_bytes


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        blob_backend="memory",
        queue_url="memory://tests",
        message_timeout_seconds=5.0,
        requeue_delay_seconds=0.0,
        reconnect_initial_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
    )


@pytest.fixture
def store() -> MemoryBlobStore:
    # Small chunks so reads really stream
    return MemoryBlobStore(chunk_size=1024)


@pytest.fixture
def broker() -> MemoryBroker:
    return MemoryBroker()


@pytest.fixture
def connection(broker: MemoryBroker) -> MemoryQueueConnection:
    return MemoryQueueConnection(broker)


@pytest.fixture
def put_original(
    store: MemoryBlobStore, settings: Settings,
) -> Callable[..., Awaitable[str]]:
    """Store an original the way the upload route does and return its id."""

    async def _put(
        data: bytes,
        *,
        blob_id: str | None = None,
        name: str | None = None,
        content_type: str = "image/jpeg",
    ) -> str:
        upload = await store.open_write(
            settings.originals_bucket,
            name or f"{blob_id or 'photo'}.jpg",
            {"contentType": content_type, "businessId": "biz-1"},
            blob_id=blob_id,
        )
        async with upload:
            await upload.write(data)
            return await upload.finalize()

    return _put


@pytest.fixture
def read_blob(store: MemoryBlobStore) -> Callable[[str, str], Awaitable[bytes]]:
    """Open a fresh download and collect every chunk."""

    async def _read(bucket: str, name: str) -> bytes:
        download = await store.open_read(bucket, name)
        return b"".join([chunk async for chunk in download])

    return _read
