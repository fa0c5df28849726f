from urllib.parse import urlparse

from thumbnailer.queue.base import Channel, Delivery, Handler, QueueConnection
from thumbnailer.queue.memory_queue import MemoryBroker, MemoryQueueConnection
from thumbnailer.queue.redis_queue import RedisQueueConnection

# memory://<name> connections with the same name share one broker per process
_memory_brokers: dict[str, MemoryBroker] = {}


async def connect(
    address: str,
    *,
    namespace: str = "thumbnailer",
    ack_timeout: int = 300,
) -> QueueConnection:
    """Connect to the broker at ``address`` (redis://, rediss:// or memory://).

    Raises ConnectionFailed; never retries.
    """
    scheme = urlparse(address).scheme
    if scheme in ("redis", "rediss", "unix"):
        return await RedisQueueConnection.connect(
            address, namespace=namespace, ack_timeout=ack_timeout,
        )
    if scheme == "memory":
        name = urlparse(address).netloc or "default"
        broker = _memory_brokers.setdefault(name, MemoryBroker())
        return MemoryQueueConnection(broker)
    raise ValueError(f"Unsupported queue address: {address!r}")


__all__ = [
    "Channel",
    "Delivery",
    "Handler",
    "MemoryBroker",
    "MemoryQueueConnection",
    "QueueConnection",
    "RedisQueueConnection",
    "connect",
]
