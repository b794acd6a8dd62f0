"""Remote invalidation channel management.

One channel is kept per distinct remote address. Each channel runs its own
small state machine:

    CLOSED --open--> OPENING --ready--> OPEN --closed--> CLOSED
                        |
                        +--failure--> CLOSED

Channels are best-effort. Open failures and malformed messages are logged
and swallowed; the caller that asked for the channel never sees them. When a
channel closes the manager forgets its address, so a later request opens a
fresh one.

Inbound messages from every channel are decoded and put on a single queue.
One consumer task drains that queue and applies each selector to the cache,
so remote invalidations run on the same event loop as local calls and never
interleave with them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from imcache.errors import MalformedMessageError, TransportUnavailableError
from imcache.invalidation import decode_selector
from imcache.observability.logging import channel_address_var
from imcache.selectors import Selector
from imcache.transport import Transport, TransportFactory, default_transport_factory

logger = logging.getLogger(__name__)

SelectorHandler = Callable[[Selector], Any]


class ChannelState(str, Enum):
    """Channel state machine."""

    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"


@dataclass
class ChannelMetrics:
    """Counters for remote channel activity."""

    open_attempts: int = 0
    open_failures: int = 0
    messages_received: int = 0
    messages_dropped: int = 0
    disconnections: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Export metrics as dictionary."""
        return {
            "open_attempts": self.open_attempts,
            "open_failures": self.open_failures,
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
            "disconnections": self.disconnections,
        }


class RemoteChannel:
    """A single channel bound to one address."""

    def __init__(self, address: str, transport: Transport):
        self.address = address
        self.transport = transport
        self.state = ChannelState.CLOSED
        self.task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"RemoteChannel({self.address!r}, state={self.state.value})"


class ChannelManager:
    """Owns the remote channels of one cache instance."""

    def __init__(
        self,
        handler: SelectorHandler,
        transport_factory: TransportFactory | None = None,
        queue_size: int = 0,
    ):
        self._handler = handler
        self._transport_factory = transport_factory or default_transport_factory
        self._channels: dict[str, RemoteChannel] = {}
        self._queue_size = queue_size
        self._queue: asyncio.Queue[Selector] = asyncio.Queue(maxsize=queue_size)
        self._consumer: asyncio.Task[None] | None = None
        self.metrics = ChannelMetrics()

    @property
    def addresses(self) -> list[str]:
        """Addresses with a channel that is opening or open."""
        return list(self._channels)

    @property
    def pending_count(self) -> int:
        """Number of decoded invalidations waiting to be applied."""
        return self._queue.qsize()

    def state(self, address: str) -> ChannelState:
        channel = self._channels.get(address)
        return channel.state if channel is not None else ChannelState.CLOSED

    def ensure_channel(self, address: str) -> bool:
        """Start opening a channel for ``address`` unless one already exists.

        Returns True if a new channel was started. Never raises for transport
        problems; those leave the address CLOSED.
        """
        if address in self._channels:
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; remote channel {address} not opened")
            return False

        self.metrics.open_attempts += 1
        try:
            transport = self._transport_factory(address)
        except TransportUnavailableError as e:
            self.metrics.open_failures += 1
            logger.warning(f"Remote invalidation channel unavailable: {e}")
            return False

        channel = RemoteChannel(address, transport)
        channel.state = ChannelState.OPENING
        self._channels[address] = channel
        channel.task = loop.create_task(self._run_channel(channel))

        self._ensure_consumer(loop)
        return True

    async def close_channel(self, address: str) -> None:
        """Close the channel for ``address`` if there is one."""
        channel = self._channels.pop(address, None)
        if channel is None:
            return
        await self._cancel_channel(channel)

    async def close(self) -> None:
        """Close every channel and stop the consumer."""
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            await self._cancel_channel(channel)

        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

        # Discard undelivered invalidations so drain() waiters are released
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued invalidation has been applied."""
        await self._queue.join()

    def _ensure_consumer(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._consumer is not None:
            if self._consumer.get_loop() is not loop:
                # Consumer belongs to a loop that is gone; the queue went with it
                self._queue = asyncio.Queue(maxsize=self._queue_size)
            elif not self._consumer.done():
                return
        self._consumer = loop.create_task(self._consume_loop())

    async def _cancel_channel(self, channel: RemoteChannel) -> None:
        if channel.task and not channel.task.done():
            channel.task.cancel()
            try:
                await channel.task
            except asyncio.CancelledError:
                pass
        channel.state = ChannelState.CLOSED

    async def _run_channel(self, channel: RemoteChannel) -> None:
        """Drive one channel through OPENING -> OPEN -> CLOSED."""
        channel_address_var.set(channel.address)
        try:
            try:
                await channel.transport.open()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metrics.open_failures += 1
                logger.warning(f"Failed to open remote channel {channel.address}: {e}")
                return

            channel.state = ChannelState.OPEN
            logger.info(f"Remote invalidation channel open: {channel.address}")

            try:
                async for data in channel.transport.messages():
                    self._handle_message(channel, data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Remote channel {channel.address} failed: {e}")

            self.metrics.disconnections += 1
            logger.info(f"Remote invalidation channel closed: {channel.address}")
        finally:
            channel.state = ChannelState.CLOSED
            if self._channels.get(channel.address) is channel:
                del self._channels[channel.address]
            try:
                await channel.transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport for {channel.address}: {e}")

    def _handle_message(self, channel: RemoteChannel, data: bytes) -> None:
        """Decode one payload and queue it for the consumer."""
        self.metrics.messages_received += 1
        try:
            selector = decode_selector(data)
        except MalformedMessageError as e:
            self.metrics.messages_dropped += 1
            logger.debug(f"Dropped malformed message on {channel.address}: {e}")
            return
        except Exception as e:
            self.metrics.messages_dropped += 1
            logger.warning(f"Failed to decode message on {channel.address}: {e}")
            return

        try:
            self._queue.put_nowait(selector)
        except asyncio.QueueFull:
            self.metrics.messages_dropped += 1
            logger.warning(f"Invalidation queue full; dropped message from {channel.address}")

    async def _consume_loop(self) -> None:
        """Apply queued selectors one at a time."""
        while True:
            selector = await self._queue.get()
            try:
                self._handler(selector)
            except Exception:
                logger.exception("Error applying remote invalidation")
            finally:
                self._queue.task_done()
