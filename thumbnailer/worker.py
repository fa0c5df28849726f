"""
Derivation worker: turns trigger messages into 100x100 JPEG thumbnails.

Runs as a SEPARATE process from the FastAPI API server.

Start:  python -m thumbnailer.worker   (or the ``thumbnailer-worker`` script)
Scale:  raise WORKER_CONCURRENCY for more channels per process, or run N
        processes; messages carry no ordering dependency on each other.

Per delivery:
  RECEIVED → RESOLVING → STREAMING → DECODING → RESIZING → ENCODING → WRITING
  success / permanent failure   → ack
  transient failure / deadline  → requeue after a short delay
  ack or requeue impossible     → left unacked, broker redelivers
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections import Counter
from dataclasses import dataclass

from thumbnailer import queue
from thumbnailer.config import Settings
from thumbnailer.constants import (
    META_CONTENT_TYPE,
    META_HEIGHT,
    META_WIDTH,
    THUMBNAIL_EXTENSION,
    WRITE_CHUNK_SIZE,
    DerivationStage,
    Disposition,
)
from thumbnailer.exceptions import (
    DerivationError,
    InvalidId,
    MalformedTrigger,
    NotFound,
    QueueError,
    StoreUnavailable,
    UnresolvableReference,
    UnsupportedMedia,
)
from thumbnailer.imaging import Thumbnail, decode_image, encode_jpeg, resize_image
from thumbnailer.queue import Delivery, QueueConnection
from thumbnailer.storage import BlobRecord, BlobStore, normalize_blob_id, open_blob_store

logger = logging.getLogger(__name__)


def parse_trigger(payload: bytes) -> str:
    """Trigger payload → canonical original blob id."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedTrigger(f"Trigger payload is not UTF-8: {payload[:64]!r}") from exc
    try:
        return normalize_blob_id(text)
    except InvalidId as exc:
        raise MalformedTrigger(f"Trigger payload is not a blob id: {text[:64]!r}") from exc


def derivative_name(blob_id: str) -> str:
    return f"{blob_id}.{THUMBNAIL_EXTENSION}"


@dataclass
class DerivationResult:
    blob_id: str
    name: str
    skipped: bool = False
    thumbnail: Thumbnail | None = None


@dataclass
class _Progress:
    stage: DerivationStage = DerivationStage.RECEIVED


class DerivationWorker:
    """Message handler; the store is injected and owned by the caller."""

    def __init__(self, store: BlobStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.stats: Counter[Disposition] = Counter()

    # ── Pipeline ──────────────────────────────────────────────────────────────

    async def derive(self, payload: bytes, progress: _Progress | None = None) -> DerivationResult:
        """Run steps 1-7 for one payload. Raises DerivationError or StoreUnavailable."""
        settings = self.settings
        progress = progress or _Progress()

        blob_id = parse_trigger(payload)

        progress.stage = DerivationStage.RESOLVING
        try:
            record = await self.store.find_by_id(settings.originals_bucket, blob_id)
        except NotFound as exc:
            raise UnresolvableReference(blob_id) from exc

        name = derivative_name(record.blob_id)
        if settings.skip_existing_derivatives and await self.store.exists(
            settings.derivatives_bucket, name,
        ):
            return DerivationResult(blob_id=record.blob_id, name=name, skipped=True)

        progress.stage = DerivationStage.STREAMING
        image_data = await self._read_original(record)

        # CPU-bound → offload to thread
        loop = asyncio.get_running_loop()
        progress.stage = DerivationStage.DECODING
        image = await loop.run_in_executor(None, decode_image, image_data)
        progress.stage = DerivationStage.RESIZING
        resized = await loop.run_in_executor(
            None, resize_image, image, settings.thumbnail_width, settings.thumbnail_height,
        )
        progress.stage = DerivationStage.ENCODING
        thumbnail = await loop.run_in_executor(None, encode_jpeg, resized, settings.jpeg_quality)

        progress.stage = DerivationStage.WRITING
        await self._write_derivative(name, thumbnail)
        return DerivationResult(blob_id=record.blob_id, name=name, thumbnail=thumbnail)

    async def _read_original(self, record: BlobRecord) -> bytes:
        limit = self.settings.max_original_bytes
        if record.length > limit:
            raise UnsupportedMedia(
                f"Original {record.blob_id} is {record.length} bytes (limit {limit})",
                DerivationStage.STREAMING,
            )
        try:
            download = await self.store.open_read(record.bucket, record.name)
        except NotFound as exc:
            # Deleted between lookup and read
            raise UnresolvableReference(record.blob_id, DerivationStage.STREAMING) from exc

        chunks: list[bytes] = []
        total = 0
        try:
            async for chunk in download:
                total += len(chunk)
                if total > limit:
                    raise UnsupportedMedia(
                        f"Original {record.blob_id} exceeds {limit} bytes",
                        DerivationStage.STREAMING,
                    )
                chunks.append(chunk)
        finally:
            await download.aclose()
        return b"".join(chunks)

    async def _write_derivative(self, name: str, thumbnail: Thumbnail) -> None:
        metadata = {
            META_CONTENT_TYPE: thumbnail.content_type,
            META_WIDTH: thumbnail.width,
            META_HEIGHT: thumbnail.height,
        }
        data = thumbnail.data
        async with await self.store.open_write(
            self.settings.derivatives_bucket, name, metadata,
        ) as upload:
            for offset in range(0, len(data), WRITE_CHUNK_SIZE):
                await upload.write(data[offset:offset + WRITE_CHUNK_SIZE])
            await upload.finalize()

    # ── Delivery handling ─────────────────────────────────────────────────────

    async def handle(self, delivery: Delivery) -> Disposition:
        """Process one delivery and settle it. Only queue errors escape."""
        progress = _Progress()
        try:
            result = await asyncio.wait_for(
                self.derive(delivery.payload, progress),
                timeout=self.settings.message_timeout_seconds,
            )
        except DerivationError as exc:
            logger.warning(
                "Dropping trigger %r at %s: %s", delivery.payload[:64], exc.stage.value, exc,
            )
            return await self._settle(delivery, Disposition.FAILED_ACKNOWLEDGED)
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(
                "Transient failure for trigger %r at %s, requeueing: %s",
                delivery.payload[:64], progress.stage.value, str(exc) or "deadline exceeded",
            )
            await asyncio.sleep(self.settings.requeue_delay_seconds)
            return await self._settle(delivery, Disposition.FAILED_UNACKNOWLEDGED)
        except Exception:
            logger.exception(
                "Unexpected failure for trigger %r at %s; dropping",
                delivery.payload[:64], progress.stage.value,
            )
            return await self._settle(delivery, Disposition.FAILED_ACKNOWLEDGED)

        if result.skipped:
            logger.info("Thumbnail %s already exists; skipping", result.name)
            return await self._settle(delivery, Disposition.SKIPPED)
        logger.info(
            "Thumbnail %s written for original %s (%d bytes)",
            result.name, result.blob_id, result.thumbnail.length,
        )
        return await self._settle(delivery, Disposition.ACKNOWLEDGED)

    async def _settle(self, delivery: Delivery, disposition: Disposition) -> Disposition:
        try:
            if disposition is Disposition.FAILED_UNACKNOWLEDGED:
                await delivery.reject(requeue=True)
            else:
                await delivery.ack()
        except QueueError:
            logger.error("Could not settle delivery %s; broker will redeliver", delivery.delivery_tag)
            self.stats[Disposition.FAILED_UNACKNOWLEDGED] += 1
            raise
        self.stats[disposition] += 1
        return disposition


# ── Supervisor ───────────────────────────────────────────────────────────────

async def _wait(stop: asyncio.Event, delay: float) -> None:
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=delay)


async def consume(
    connection: QueueConnection,
    worker: DerivationWorker,
    settings: Settings,
    stop: asyncio.Event,
) -> None:
    """Run ``worker_concurrency`` channels until stop is set or one of them fails."""
    await connection.declare_queue(settings.queue_name)
    channels = [
        asyncio.create_task(connection.subscribe(settings.queue_name, worker.handle))
        for _ in range(max(settings.worker_concurrency, 1))
    ]
    stopper = asyncio.create_task(stop.wait())
    done, pending = await asyncio.wait([*channels, stopper], return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if task is not stopper and task.exception() is not None:
            raise task.exception()


async def run_worker(
    worker: DerivationWorker,
    *,
    stop: asyncio.Event | None = None,
    connect=queue.connect,
) -> DerivationWorker:
    """Connect, consume, and reconnect with capped backoff until ``stop`` is set."""
    settings = worker.settings
    stop = stop or asyncio.Event()
    delay = settings.reconnect_initial_delay_seconds

    while not stop.is_set():
        try:
            connection = await connect(
                settings.queue_url,
                namespace=settings.queue_namespace,
                ack_timeout=settings.ack_timeout_seconds,
            )
        except QueueError as exc:
            logger.warning("Broker unavailable (%s); retrying in %.1fs", exc, delay)
            await _wait(stop, delay)
            delay = min(delay * 2, settings.reconnect_max_delay_seconds)
            continue

        delay = settings.reconnect_initial_delay_seconds
        logger.info(
            "Worker consuming %r with %d channel(s)", settings.queue_name, settings.worker_concurrency,
        )
        try:
            await consume(connection, worker, settings, stop)
        except QueueError as exc:
            logger.warning("Lost broker connection: %s; reconnecting", exc)
        finally:
            await connection.close()

        if not stop.is_set():
            await _wait(stop, delay)

    logger.info("Worker stopped: %s", dict(worker.stats))
    return worker


async def _main(settings: Settings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with open_blob_store(settings) as store:
        await run_worker(DerivationWorker(store, settings), stop=stop)


def main() -> None:
    settings = Settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s:%(name)s: %(message)s")
    asyncio.run(_main(settings))


if __name__ == "__main__":
    main()
