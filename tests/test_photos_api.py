import io
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from PIL import Image

from thumbnailer.main import create_app
from thumbnailer.queue import Delivery
from thumbnailer.worker import DerivationWorker


@pytest.fixture
def app(settings, store, connection) -> FastAPI:
    return create_app(settings, blob_store=store, queue_connection=connection)


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _upload(client: AsyncClient, data: bytes, content_type: str = "image/jpeg", **form):
    fields = {"businessId": "biz-42", **form}
    return await client.post(
        "/photos",
        files={"image": ("photo.jpg", data, content_type)},
        data=fields,
    )


@pytest.mark.asyncio
async def test_upload_stores_original_and_queues_it(
    async_client: AsyncClient, settings, store, broker, image_bytes,
) -> None:
    data = image_bytes()
    response = await _upload(async_client, data, caption="Front door")

    assert response.status_code == 201
    body = response.json()
    photo_id = body["id"]
    assert body["links"] == {"photo": f"/photos/{photo_id}", "business": "/businesses/biz-42"}
    assert broker.pending(settings.queue_name) == [photo_id.encode()]

    record = await store.find_by_id(settings.originals_bucket, photo_id)
    assert record.length == len(data)
    assert record.name.endswith(".jpg")
    assert record.metadata == {
        "contentType": "image/jpeg",
        "businessId": "biz-42",
        "caption": "Front door",
    }


@pytest.mark.asyncio
async def test_png_upload_keeps_png_extension(async_client: AsyncClient, settings, store, image_bytes) -> None:
    response = await _upload(async_client, image_bytes(fmt="PNG"), "image/png")

    assert response.status_code == 201
    record = await store.find_by_id(settings.originals_bucket, response.json()["id"])
    assert record.name.endswith(".png")


@pytest.mark.asyncio
async def test_upload_rejects_other_content_types(async_client: AsyncClient, broker) -> None:
    response = await _upload(async_client, b"GIF89a", "image/gif")

    assert response.status_code == 415
    assert "image/gif" in response.json()["detail"]
    assert broker.pending("images") == []


@pytest.mark.asyncio
async def test_upload_requires_business_id(async_client: AsyncClient, image_bytes) -> None:
    response = await async_client.post(
        "/photos", files={"image": ("photo.jpg", image_bytes(), "image/jpeg")},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_upload_over_limit_is_rejected(
    async_client: AsyncClient, settings, store, broker, image_bytes,
) -> None:
    settings.max_original_bytes = 100

    response = await _upload(async_client, image_bytes())

    assert response.status_code == 413
    assert store.records(settings.originals_bucket) == []
    assert broker.pending(settings.queue_name) == []


@pytest.mark.asyncio
async def test_upload_when_store_is_down(async_client: AsyncClient, store, broker, image_bytes) -> None:
    store.available = False

    response = await _upload(async_client, image_bytes())

    assert response.status_code == 503
    assert broker.pending("images") == []


@pytest.mark.asyncio
async def test_upload_when_queue_is_down(
    async_client: AsyncClient, settings, store, connection, image_bytes,
) -> None:
    await connection.drop()

    response = await _upload(async_client, image_bytes())

    assert response.status_code == 503
    assert "could not be scheduled" in response.json()["detail"]
    # The original stays; only the trigger is missing
    assert len(store.records(settings.originals_bucket)) == 1


@pytest.mark.asyncio
async def test_get_photo_returns_camel_case_fields(async_client: AsyncClient, image_bytes) -> None:
    data = image_bytes()
    photo_id = (await _upload(async_client, data)).json()["id"]

    response = await async_client.get(f"/photos/{photo_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == photo_id
    assert body["url"].startswith("/media/images/")
    assert body["thumbnailUrl"] == f"/media/thumbs/{photo_id}.jpg"
    assert body["contentType"] == "image/jpeg"
    assert body["businessId"] == "biz-42"
    assert body["caption"] is None
    assert body["size"] == len(data)


@pytest.mark.asyncio
@pytest.mark.parametrize("photo_id", ["deadbeef", "not-an-id"])
async def test_get_unknown_photo_is_404(async_client: AsyncClient, photo_id: str) -> None:
    response = await async_client.get(f"/photos/{photo_id}")
    assert response.status_code == 404
    assert response.json() == {"detail": "Photo not found."}


@pytest.mark.asyncio
async def test_original_is_streamed_back(async_client: AsyncClient, image_bytes) -> None:
    data = image_bytes(600, 400)
    photo_id = (await _upload(async_client, data)).json()["id"]
    url = (await async_client.get(f"/photos/{photo_id}")).json()["url"]

    response = await async_client.get(url)

    assert response.status_code == 200
    assert response.content == data
    assert response.headers["content-type"] == "image/jpeg"
    assert response.headers["content-length"] == str(len(data))
    assert "immutable" in response.headers["cache-control"]


@pytest.mark.asyncio
async def test_thumbnail_is_served_once_derived(
    async_client: AsyncClient, settings, store, connection, image_bytes,
) -> None:
    photo_id = (await _upload(async_client, image_bytes())).json()["id"]
    thumbnail_url = (await async_client.get(f"/photos/{photo_id}")).json()["thumbnailUrl"]

    assert (await async_client.get(thumbnail_url)).status_code == 404

    channel = await connection.channel()
    await DerivationWorker(store, settings).handle(
        Delivery(settings.queue_name, photo_id.encode(), 1, channel)
    )

    response = await async_client.get(thumbnail_url)
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    with Image.open(io.BytesIO(response.content)) as image:
        assert image.size == (100, 100)


@pytest.mark.asyncio
async def test_health(async_client: AsyncClient) -> None:
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "thumbnailer"}


@pytest.mark.asyncio
async def test_request_id_is_echoed(async_client: AsyncClient) -> None:
    response = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    generated = await async_client.get("/health")
    assert len(generated.headers["X-Request-ID"]) == 32


@pytest.mark.asyncio
async def test_unhandled_errors_use_envelope(app: FastAPI, async_client: AsyncClient) -> None:
    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("kaput")

    response = await async_client.get("/boom", headers={"X-Request-ID": "req-9"})

    assert response.status_code == 500
    assert response.json() == {
        "error": {"code": "internal_error", "message": "An unexpected error occurred"},
        "request_id": "req-9",
    }
