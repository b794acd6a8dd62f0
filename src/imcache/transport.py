"""Transports for remote invalidation channels.

A transport is a duplex message channel bound to one address. The cache
only reads from it: ``open`` connects, ``messages`` yields raw payloads until
the remote side goes away, ``close`` releases the connection.

Address formats:
- redis://host:port/db#channel (Redis Pub/Sub; channel defaults to
  ``settings.invalidation_channel``)
- #channel (Redis Pub/Sub on ``settings.redis_url``)
- memory://name (process-local broker, see :class:`InMemoryBroker`)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING
from urllib.parse import urldefrag, urlparse

from imcache.config import settings
from imcache.errors import TransportUnavailableError

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

REDIS_SCHEMES = ("redis", "rediss", "unix")
MEMORY_SCHEME = "memory"


def parse_redis_address(address: str) -> tuple[str, str]:
    """Split a channel address into ``(redis_url, channel)``.

    A missing server part (``#channel`` or ``""``) falls back to
    ``settings.redis_url``; a missing channel to ``settings.invalidation_channel``.
    """
    url, fragment = urldefrag(address)
    return url or settings.redis_url, fragment or settings.invalidation_channel


class Transport(ABC):
    """Abstract duplex channel to one remote address."""

    def __init__(self, address: str):
        self.address = address

    @abstractmethod
    async def open(self) -> None:
        """Connect and subscribe.

        Raises:
            TransportUnavailableError: If the channel cannot be opened.
        """
        pass

    @abstractmethod
    def messages(self) -> AsyncIterator[bytes]:
        """Yield inbound payloads; returns when the remote side closes."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        pass


TransportFactory = Callable[[str], Transport]


class RedisPubSubTransport(Transport):
    """Receives invalidation messages from a Redis Pub/Sub channel."""

    def __init__(self, address: str):
        super().__init__(address)
        self.url, self.channel = parse_redis_address(address)
        self._redis: Redis | None = None
        self._pubsub: PubSub | None = None

    async def open(self) -> None:
        import redis.asyncio as redis

        try:
            self._redis = redis.from_url(self.url)  # type: ignore[no-untyped-call]
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(self.channel)
        except Exception as e:
            await self.close()
            raise TransportUnavailableError(self.address, str(e)) from e

        logger.info(f"Subscribed to invalidation channel {self.channel} at {self.url}")

    async def messages(self) -> AsyncIterator[bytes]:
        if self._pubsub is None:
            return
        async for message in self._pubsub.listen():
            if message["type"] == "message":
                yield message["data"]

    async def close(self) -> None:
        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            try:
                await pubsub.unsubscribe(self.channel)
            except Exception as e:
                logger.debug(f"Error unsubscribing from {self.channel}: {e}")
            await pubsub.aclose()

        if self._redis is not None:
            client, self._redis = self._redis, None
            await client.aclose()


class InMemoryBroker:
    """Process-local message broker keyed by address.

    Publishing delivers to every open :class:`InMemoryTransport` on that
    address. Addresses can be marked unavailable to simulate open failures,
    and disconnected to simulate the remote side going away.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[InMemoryTransport]] = {}
        self._unavailable: set[str] = set()

    def transport(self, address: str) -> InMemoryTransport:
        """Transport factory bound to this broker."""
        return InMemoryTransport(address, self)

    def set_unavailable(self, address: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable.add(address)
        else:
            self._unavailable.discard(address)

    def subscriber_count(self, address: str) -> int:
        return len(self._subscribers.get(address, ()))

    def publish(self, address: str, data: bytes | str) -> int:
        """Deliver ``data`` to every subscriber of ``address``."""
        payload = data.encode() if isinstance(data, str) else data
        subscribers = self._subscribers.get(address, set())
        for transport in subscribers:
            transport._deliver(payload)
        return len(subscribers)

    def disconnect(self, address: str) -> None:
        """Close every subscriber on ``address`` from the remote side."""
        for transport in list(self._subscribers.get(address, ())):
            transport._deliver(None)
            self._unsubscribe(transport)

    def _subscribe(self, transport: InMemoryTransport) -> None:
        if transport.address in self._unavailable:
            raise TransportUnavailableError(transport.address, "address unavailable")
        self._subscribers.setdefault(transport.address, set()).add(transport)

    def _unsubscribe(self, transport: InMemoryTransport) -> None:
        subscribers = self._subscribers.get(transport.address)
        if subscribers is not None:
            subscribers.discard(transport)
            if not subscribers:
                del self._subscribers[transport.address]


class InMemoryTransport(Transport):
    """Transport backed by an :class:`InMemoryBroker`."""

    def __init__(self, address: str, broker: InMemoryBroker):
        super().__init__(address)
        self._broker = broker
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    async def open(self) -> None:
        self._broker._subscribe(self)

    async def messages(self) -> AsyncIterator[bytes]:
        while True:
            data = await self._queue.get()
            if data is None:
                return
            yield data

    async def close(self) -> None:
        self._broker._unsubscribe(self)
        self._deliver(None)

    def _deliver(self, data: bytes | None) -> None:
        self._queue.put_nowait(data)


# Broker behind memory:// addresses when no factory is supplied
default_broker = InMemoryBroker()


def default_transport_factory(address: str) -> Transport:
    """Pick a transport from the address scheme.

    Raises:
        TransportUnavailableError: If the scheme is not supported.
    """
    scheme = urlparse(address).scheme
    if scheme in REDIS_SCHEMES or not address or address.startswith("#"):
        return RedisPubSubTransport(address)
    if scheme == MEMORY_SCHEME:
        return default_broker.transport(address)
    raise TransportUnavailableError(address, f"unsupported scheme {scheme!r}")
