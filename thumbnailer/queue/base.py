"""
Queue client: connections, channels and deliveries.

A connection owns the link to the broker and publishes.  Consumption goes
through channels: each channel invokes its handler for one delivery at a time,
and a delivery is settled (ack / reject) through the channel that produced it.
A delivery left unsettled stays redeliverable.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field


@dataclass(eq=False)
class Delivery:
    queue: str
    payload: bytes
    delivery_tag: int
    channel: Channel
    settled: bool = field(default=False, init=False)

    async def ack(self) -> None:
        await self.channel.ack(self)

    async def reject(self, *, requeue: bool = True) -> None:
        await self.channel.reject(self, requeue=requeue)


Handler = Callable[[Delivery], Awaitable[None]]


class Channel(ABC):
    async def ack(self, delivery: Delivery) -> None:
        self._check_owned(delivery)
        await self._ack(delivery)
        delivery.settled = True

    async def reject(self, delivery: Delivery, *, requeue: bool = True) -> None:
        """Give a delivery back to the queue (``requeue``) or drop it."""
        self._check_owned(delivery)
        await self._reject(delivery, requeue)
        delivery.settled = True

    def _check_owned(self, delivery: Delivery) -> None:
        if delivery.channel is not self:
            raise ValueError("Delivery must be settled on the channel that delivered it")
        if delivery.settled:
            raise RuntimeError(f"Delivery {delivery.delivery_tag} is already settled")

    @abstractmethod
    async def consume(self, queue: str, handler: Handler) -> None:
        """Deliver messages to ``handler`` sequentially until the channel closes.

        Raises ConnectionFailed when the broker connection is lost.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop consuming and hand unsettled deliveries back to the broker."""

    @abstractmethod
    async def _ack(self, delivery: Delivery) -> None: ...

    @abstractmethod
    async def _reject(self, delivery: Delivery, requeue: bool) -> None: ...


class QueueConnection(ABC):
    @abstractmethod
    async def declare_queue(self, name: str) -> None:
        """Ensure a durable queue exists. Idempotent."""

    @abstractmethod
    async def publish(self, queue: str, payload: bytes) -> None: ...

    @abstractmethod
    async def channel(self) -> Channel: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def subscribe(self, queue: str, handler: Handler) -> None:
        """Consume ``queue`` on a fresh channel until it closes or the link drops."""
        channel = await self.channel()
        try:
            await channel.consume(queue, handler)
        finally:
            await channel.close()

    async def __aenter__(self) -> QueueConnection:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
