"""In-process queue broker for local development and tests."""
from __future__ import annotations

import asyncio
from collections import deque

from thumbnailer.exceptions import ConnectionFailed
from thumbnailer.queue.base import Channel, Delivery, Handler, QueueConnection


class MemoryBroker:
    """Named FIFO queues of payloads shared by connections."""

    def __init__(self) -> None:
        self.declared: set[str] = set()
        self.queues: dict[str, deque[bytes]] = {}
        self._cond: asyncio.Condition | None = None

    @property
    def cond(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    def pending(self, queue: str) -> list[bytes]:
        return list(self.queues.get(queue, ()))

    async def put(self, queue: str, payload: bytes, *, front: bool = False) -> None:
        """Append a payload; requeued payloads go to the front."""
        async with self.cond:
            items = self.queues.setdefault(queue, deque())
            if front:
                items.appendleft(payload)
            else:
                items.append(payload)
            self.cond.notify_all()


class MemoryChannel(Channel):
    def __init__(self, connection: MemoryQueueConnection) -> None:
        self._connection = connection
        self._broker = connection.broker
        self._unacked: dict[int, Delivery] = {}
        self._next_tag = 0
        self._closed = False

    async def _next(self, queue: str) -> bytes | None:
        cond = self._broker.cond
        async with cond:
            await cond.wait_for(
                lambda: self._closed or self._connection.lost or self._broker.queues.get(queue)
            )
            if self._connection.lost:
                raise ConnectionFailed("In-memory broker connection dropped")
            if self._closed:
                return None
            return self._broker.queues[queue].popleft()

    async def consume(self, queue: str, handler: Handler) -> None:
        while not self._closed:
            payload = await self._next(queue)
            if payload is None:
                return
            self._next_tag += 1
            delivery = Delivery(queue, payload, self._next_tag, self)
            self._unacked[delivery.delivery_tag] = delivery
            await handler(delivery)

    async def _ack(self, delivery: Delivery) -> None:
        if self._connection.lost:
            raise ConnectionFailed("In-memory broker connection dropped")
        self._unacked.pop(delivery.delivery_tag, None)

    async def _reject(self, delivery: Delivery, requeue: bool) -> None:
        if self._connection.lost:
            raise ConnectionFailed("In-memory broker connection dropped")
        self._unacked.pop(delivery.delivery_tag, None)
        if requeue:
            await self._broker.put(delivery.queue, delivery.payload, front=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for delivery in self._unacked.values():
            await self._broker.put(delivery.queue, delivery.payload, front=True)
        self._unacked.clear()
        async with self._broker.cond:
            self._broker.cond.notify_all()


class MemoryQueueConnection(QueueConnection):
    def __init__(self, broker: MemoryBroker | None = None) -> None:
        self.broker = broker or MemoryBroker()
        self.lost = False
        self._channels: list[MemoryChannel] = []

    async def declare_queue(self, name: str) -> None:
        self.broker.declared.add(name)
        self.broker.queues.setdefault(name, deque())

    async def publish(self, queue: str, payload: bytes) -> None:
        if self.lost:
            raise ConnectionFailed("In-memory broker connection dropped")
        await self.broker.put(queue, bytes(payload))

    async def channel(self) -> Channel:
        channel = MemoryChannel(self)
        self._channels.append(channel)
        return channel

    async def drop(self) -> None:
        """Simulate losing the broker link: consumers raise ConnectionFailed."""
        self.lost = True
        async with self.broker.cond:
            self.broker.cond.notify_all()

    async def close(self) -> None:
        for channel in self._channels:
            await channel.close()
        self._channels.clear()
