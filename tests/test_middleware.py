from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException, Request
from httpx import ASGITransport, AsyncClient
from starlette.exceptions import HTTPException as StarletteHTTPException

from thumbnailer.exceptions import StoreUnavailable
from thumbnailer.middleware import error_envelope_middleware, request_id_middleware


async def _rate_limit(request: Request, call_next):
    if request.url.path == "/limited":
        raise StarletteHTTPException(status_code=429, detail="Too many uploads")
    return await call_next(request)


@pytest.fixture
def app() -> FastAPI:
    app = FastAPI()

    @app.get("/missing")
    async def missing() -> None:
        raise HTTPException(status_code=404, detail="Photo not found.")

    @app.get("/outage")
    async def outage() -> None:
        raise StoreUnavailable("bucket unreachable")

    @app.get("/limited")
    async def limited() -> dict:
        return {}

    app.middleware("http")(_rate_limit)
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(error_envelope_middleware)
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_route_http_errors_keep_detail_shape(client: AsyncClient) -> None:
    response = await client.get("/missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "Photo not found."}


@pytest.mark.asyncio
async def test_middleware_http_errors_use_envelope(client: AsyncClient) -> None:
    response = await client.get("/limited", headers={"X-Request-ID": "req-1"})
    assert response.status_code == 429
    assert response.json() == {
        "error": {"code": "http_error", "message": "Too many uploads"},
        "request_id": "req-1",
    }


@pytest.mark.asyncio
async def test_backend_outage_is_503(client: AsyncClient) -> None:
    response = await client.get("/outage")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "backend_unavailable"
