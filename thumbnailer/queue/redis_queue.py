"""
Redis-backed queue: reliable-queue pattern on plain lists.

Keys (``ns`` = namespace):
  ns:queues                             set of declared queue names
  ns:queue:<name>                       pending messages (LPUSH in, BLMOVE out)
  ns:queue:<name>:processing:<channel>  in-flight messages of one channel
  ns:queue:<name>:channels              channels consuming the queue
  ns:channel:<channel>:alive            liveness key, TTL = ack timeout

A channel refreshes its liveness key, then its registration, before every
fetch; a channel dropped from the registry rejoins on its next fetch.  When a
channel dies (or a handler hangs past the ack timeout) its key expires, and
the next sweep by any other channel moves its in-flight messages back onto
the queue.  Settings keep the per-message deadline inside the ack timeout.
"""
from __future__ import annotations

import logging
import time
import uuid

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from thumbnailer.exceptions import ConnectionFailed, QueueError
from thumbnailer.queue.base import Channel, Delivery, Handler, QueueConnection

logger = logging.getLogger(__name__)


def _queue_error(exc: RedisError, action: str) -> QueueError:
    if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
        return ConnectionFailed(f"Redis connection lost during {action}: {exc}")
    return QueueError(f"Redis {action} failed: {exc}")


class RedisChannel(Channel):
    def __init__(self, connection: RedisQueueConnection) -> None:
        self.channel_id = uuid.uuid4().hex
        self._connection = connection
        self._redis = connection.client
        self._queue: str | None = None
        self._closed = False
        self._next_tag = 0
        self._last_sweep = 0.0

    @property
    def _processing_key(self) -> str:
        if self._queue is None:
            raise RuntimeError("Channel is not consuming a queue")
        return self._connection.processing_key(self._queue, self.channel_id)

    async def consume(self, queue: str, handler: Handler) -> None:
        if self._queue is not None:
            raise RuntimeError("A channel consumes a single queue")
        self._queue = queue
        conn = self._connection
        queue_key = conn.queue_key(queue)
        try:
            while not self._closed:
                # Liveness first, so a registered channel is never seen as expired
                await self._redis.set(
                    conn.alive_key(self.channel_id), "1", ex=conn.ack_timeout,
                )
                await self._redis.sadd(conn.channels_key(queue), self.channel_id)
                if time.monotonic() - self._last_sweep >= conn.sweep_interval:
                    await self._recover_stale_channels(queue)
                payload = await self._redis.blmove(
                    queue_key, self._processing_key, conn.block_timeout, "RIGHT", "LEFT",
                )
                if payload is None:
                    continue
                self._next_tag += 1
                await handler(Delivery(queue, payload, self._next_tag, self))
        except RedisError as exc:
            raise _queue_error(exc, "consume") from exc

    async def _recover_stale_channels(self, queue: str) -> None:
        conn = self._connection
        self._last_sweep = time.monotonic()
        for member in await self._redis.smembers(conn.channels_key(queue)):
            channel_id = member.decode() if isinstance(member, bytes) else member
            if channel_id == self.channel_id:
                continue
            if await self._redis.exists(conn.alive_key(channel_id)):
                continue
            moved = await self._drain(conn.processing_key(queue, channel_id), conn.queue_key(queue))
            await self._redis.srem(conn.channels_key(queue), channel_id)
            if moved:
                logger.warning(
                    "Requeued %d unacknowledged message(s) from expired channel %s on %s",
                    moved, channel_id, queue,
                )

    async def _drain(self, source: str, queue_key: str) -> int:
        moved = 0
        while await self._redis.lmove(source, queue_key, "RIGHT", "RIGHT") is not None:
            moved += 1
        return moved

    async def _ack(self, delivery: Delivery) -> None:
        try:
            removed = await self._redis.lrem(self._processing_key, 1, delivery.payload)
        except RedisError as exc:
            raise _queue_error(exc, "ack") from exc
        if not removed:
            logger.debug("Delivery %s was already requeued before its ack", delivery.delivery_tag)

    async def _reject(self, delivery: Delivery, requeue: bool) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._processing_key, 1, delivery.payload)
                if requeue:
                    pipe.rpush(self._connection.queue_key(delivery.queue), delivery.payload)
                await pipe.execute()
        except RedisError as exc:
            raise _queue_error(exc, "reject") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue is None:
            return
        conn = self._connection
        try:
            moved = await self._drain(self._processing_key, conn.queue_key(self._queue))
            await self._redis.delete(conn.alive_key(self.channel_id))
            await self._redis.srem(conn.channels_key(self._queue), self.channel_id)
        except RedisError as exc:
            # The liveness key expires on its own; another channel recovers the rest.
            logger.warning("Channel %s closed uncleanly: %s", self.channel_id, exc)
            return
        if moved:
            logger.info("Channel %s requeued %d unacknowledged message(s)", self.channel_id, moved)


class RedisQueueConnection(QueueConnection):
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "thumbnailer",
        ack_timeout: int = 300,
        block_timeout: float = 5.0,
    ) -> None:
        self.client = client
        self.namespace = namespace
        self.ack_timeout = ack_timeout
        self.block_timeout = block_timeout
        self.sweep_interval = max(ack_timeout / 2, 1.0)
        self._channels: list[RedisChannel] = []

    @classmethod
    async def connect(
        cls,
        url: str,
        *,
        namespace: str = "thumbnailer",
        ack_timeout: int = 300,
    ) -> RedisQueueConnection:
        """Open and verify a connection. No retry; callers own the policy."""
        client = aioredis.from_url(url)
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            await client.aclose()
            raise ConnectionFailed(f"Could not connect to Redis at {url}: {exc}") from exc
        logger.info("Connected to Redis queue broker")
        return cls(client, namespace=namespace, ack_timeout=ack_timeout)

    # ── Keys ──────────────────────────────────────────────────────────────────

    @property
    def queues_key(self) -> str:
        return f"{self.namespace}:queues"

    def queue_key(self, queue: str) -> str:
        return f"{self.namespace}:queue:{queue}"

    def processing_key(self, queue: str, channel_id: str) -> str:
        return f"{self.namespace}:queue:{queue}:processing:{channel_id}"

    def channels_key(self, queue: str) -> str:
        return f"{self.namespace}:queue:{queue}:channels"

    def alive_key(self, channel_id: str) -> str:
        return f"{self.namespace}:channel:{channel_id}:alive"

    # ── QueueConnection ───────────────────────────────────────────────────────

    async def declare_queue(self, name: str) -> None:
        try:
            await self.client.sadd(self.queues_key, name)
        except RedisError as exc:
            raise _queue_error(exc, "declare_queue") from exc

    async def publish(self, queue: str, payload: bytes) -> None:
        try:
            await self.client.lpush(self.queue_key(queue), payload)
        except RedisError as exc:
            raise _queue_error(exc, "publish") from exc

    async def channel(self) -> Channel:
        channel = RedisChannel(self)
        self._channels.append(channel)
        return channel

    async def close(self) -> None:
        for channel in self._channels:
            await channel.close()
        self._channels.clear()
        try:
            await self.client.aclose()
        except RedisError as exc:
            logger.warning("Redis client closed uncleanly: %s", exc)
