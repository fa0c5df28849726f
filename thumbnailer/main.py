import logging
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from thumbnailer import queue
from thumbnailer.config import Settings
from thumbnailer.middleware import error_envelope_middleware, request_id_middleware
from thumbnailer.photos.router import router as photos_router
from thumbnailer.photos.schemas import HealthResponse
from thumbnailer.queue import QueueConnection
from thumbnailer.storage import BlobStore, open_blob_store

logger = logging.getLogger(__name__)


# ── OpenAPI metadata ──────────────────────────────────────────────────────────

_DESCRIPTION = """
## Photo Thumbnailer

* **Upload**: `POST /photos` stores a JPEG/PNG original and queues it.
* **Thumbnails**: a separate worker process (`thumbnailer-worker`) derives a
  100x100 JPEG per original and stores it as `<id>.jpg`.
* **Serving**: originals under `/media/images/`, thumbnails under `/media/thumbs/`.

### Error shape
```json
{ "detail": "Human-readable message" }
```
"""

_TAGS_METADATA = [
    {
        "name": "photos",
        "description": "Upload photos, read their metadata, download originals and thumbnails.",
    },
]


# ── App factory ───────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    async with AsyncExitStack() as stack:
        if app.state.blob_store is None:
            store = open_blob_store(settings)
            await store.connect()
            stack.push_async_callback(store.close)
            app.state.blob_store = store
        if app.state.queue is None:
            connection = await queue.connect(
                settings.queue_url,
                namespace=settings.queue_namespace,
                ack_timeout=settings.ack_timeout_seconds,
            )
            stack.push_async_callback(connection.close)
            await connection.declare_queue(settings.queue_name)
            app.state.queue = connection
        logger.info("Photo API ready (env=%s)", settings.env_name)
        yield


def create_app(
    settings: Settings | None = None,
    *,
    blob_store: BlobStore | None = None,
    queue_connection: QueueConnection | None = None,
) -> FastAPI:
    """Build the API.  Handles passed in are used as-is and never closed here."""
    settings = settings or Settings()
    app = FastAPI(
        title="Photo Thumbnailer",
        version="1.0.0",
        description=_DESCRIPTION,
        openapi_tags=_TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.blob_store = blob_store
    app.state.queue = queue_connection

    # Middleware (applied in reverse-registration order: last added = outermost)
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(error_envelope_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )

    app.include_router(photos_router)

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", service="thumbnailer")

    return app


def build_app() -> FastAPI:
    """Entry point for ``uvicorn --factory thumbnailer.main:build_app``."""
    settings = Settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s:%(name)s: %(message)s")
    return create_app(settings)
