import asyncio

import pytest

from thumbnailer import queue
from thumbnailer.exceptions import ConnectionFailed
from thumbnailer.queue import Delivery, MemoryBroker, MemoryQueueConnection


@pytest.mark.asyncio
async def test_connect_memory_address_shares_broker() -> None:
    first = await queue.connect("memory://shared-test")
    second = await queue.connect("memory://shared-test")
    other = await queue.connect("memory://other-test")

    assert isinstance(first, MemoryQueueConnection)
    assert first.broker is second.broker
    assert first.broker is not other.broker


@pytest.mark.asyncio
async def test_connect_rejects_unknown_scheme() -> None:
    with pytest.raises(ValueError):
        await queue.connect("amqp://localhost")


@pytest.mark.asyncio
async def test_requeued_messages_go_first(broker: MemoryBroker) -> None:
    conn = MemoryQueueConnection(broker)
    await conn.declare_queue("images")
    await conn.publish("images", b"a")
    await conn.publish("images", b"b")
    seen: list[bytes] = []

    async def handler(delivery: Delivery) -> None:
        seen.append(delivery.payload)
        if len(seen) == 1:
            await delivery.reject()
            return
        await delivery.ack()
        if len(seen) == 3:
            await delivery.channel.close()

    await asyncio.wait_for(conn.subscribe("images", handler), timeout=3)

    assert seen == [b"a", b"a", b"b"]
    assert broker.pending("images") == []


@pytest.mark.asyncio
async def test_closing_connection_requeues_in_flight(broker: MemoryBroker) -> None:
    conn = MemoryQueueConnection(broker)
    await conn.publish("images", b"a")
    received = asyncio.Event()

    async def handler(delivery: Delivery) -> None:
        received.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(conn.subscribe("images", handler))
    await asyncio.wait_for(received.wait(), timeout=3)
    await conn.close()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert broker.pending("images") == [b"a"]


@pytest.mark.asyncio
async def test_dropped_connection_fails_consumers(broker: MemoryBroker) -> None:
    conn = MemoryQueueConnection(broker)

    async def handler(delivery: Delivery) -> None:
        raise AssertionError("nothing was published")

    task = asyncio.create_task(conn.subscribe("images", handler))
    await asyncio.sleep(0)
    await conn.drop()

    with pytest.raises(ConnectionFailed):
        await asyncio.wait_for(task, timeout=3)
    with pytest.raises(ConnectionFailed):
        await conn.publish("images", b"a")
