"""Tests for remote invalidation channels."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import orjson
import pytest

from imcache import IMCache, InMemoryBroker
from imcache.channels import ChannelManager, ChannelState
from imcache.errors import TransportUnavailableError
from imcache.invalidation import InvalidationMessage
from imcache.selectors import Plain, Selector
from imcache.transport import Transport

ADDRESS = "memory://invalidation"


async def wait_for_state(
    cache: IMCache, address: str, state: ChannelState, timeout: float = 1.0
) -> None:
    """Poll until the channel for ``address`` reaches ``state``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while cache.channel_state(address) != state:
        if loop.time() > deadline:
            raise AssertionError(
                f"Channel {address} stuck in {cache.channel_state(address).value}, "
                f"expected {state.value}"
            )
        await asyncio.sleep(0.01)


async def settle(cache: IMCache) -> None:
    """Let delivered messages reach the queue, then wait for them to apply."""
    await asyncio.sleep(0.05)
    await cache.channels.drain()


class GatedTransport(Transport):
    """Transport whose open() waits until released."""

    def __init__(self, address: str) -> None:
        super().__init__(address)
        self.release = asyncio.Event()
        self.closed = False

    async def open(self) -> None:
        await self.release.wait()

    async def messages(self) -> AsyncIterator[bytes]:
        await asyncio.Event().wait()
        yield b""

    async def close(self) -> None:
        self.closed = True


class TestChannelStateMachine:
    """Test per-address channel lifecycle."""

    async def test_set_opens_channel(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """Setting an entry with an address opens a channel for it."""
        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        assert remote_cache.channel_state(ADDRESS) == ChannelState.OPENING

        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)
        assert broker.subscriber_count(ADDRESS) == 1

    async def test_channel_setup_is_idempotent(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """A second set with the same address does not open another channel."""
        remote_cache.set("a", 1, remote_channel_address=ADDRESS)
        remote_cache.set("b", 2, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)
        remote_cache.set("c", 3, remote_channel_address=ADDRESS)

        assert broker.subscriber_count(ADDRESS) == 1
        assert remote_cache.channels.metrics.open_attempts == 1
        assert remote_cache.channels.addresses == [ADDRESS]

    async def test_channels_are_per_address(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """Different addresses get independent channels."""
        remote_cache.set("a", 1, remote_channel_address="memory://one")
        remote_cache.set("b", 2, remote_channel_address="memory://two")
        await wait_for_state(remote_cache, "memory://one", ChannelState.OPEN)
        await wait_for_state(remote_cache, "memory://two", ChannelState.OPEN)

        broker.disconnect("memory://one")
        await wait_for_state(remote_cache, "memory://one", ChannelState.CLOSED)
        assert remote_cache.channel_state("memory://two") == ChannelState.OPEN

    async def test_open_failure_is_swallowed(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """An unavailable transport leaves the channel closed; set still succeeds."""
        broker.set_unavailable(ADDRESS)
        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.CLOSED)

        assert remote_cache.get("k") == 1
        assert remote_cache.channels.addresses == []
        assert remote_cache.channels.metrics.open_failures == 1

    async def test_reopen_after_failure(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """After a failed open, a later set tries again."""
        broker.set_unavailable(ADDRESS)
        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.CLOSED)

        broker.set_unavailable(ADDRESS, False)
        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

    async def test_remote_close_forgets_address(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """A remotely closed channel is forgotten and can be reopened."""
        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        broker.disconnect(ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.CLOSED)
        assert remote_cache.channels.addresses == []
        assert remote_cache.channels.metrics.disconnections == 1

        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)
        assert broker.subscriber_count(ADDRESS) == 1

    async def test_local_close(self, remote_cache: IMCache, broker: InMemoryBroker) -> None:
        """Closing a channel locally releases its subscription."""
        remote_cache.set("k", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        await remote_cache.channels.close_channel(ADDRESS)
        assert remote_cache.channel_state(ADDRESS) == ChannelState.CLOSED
        assert broker.subscriber_count(ADDRESS) == 0

    async def test_request_while_opening_is_noop(self) -> None:
        """Requests for an address that is still opening do not start another."""
        transports: list[GatedTransport] = []

        def factory(address: str) -> GatedTransport:
            transport = GatedTransport(address)
            transports.append(transport)
            return transport

        cache = IMCache(default_ttl_ms=0, transport_factory=factory)
        try:
            cache.set("a", 1, remote_channel_address=ADDRESS)
            await asyncio.sleep(0.01)
            cache.set("b", 2, remote_channel_address=ADDRESS)
            assert cache.channel_state(ADDRESS) == ChannelState.OPENING
            assert len(transports) == 1

            transports[0].release.set()
            await wait_for_state(cache, ADDRESS, ChannelState.OPEN)
        finally:
            await cache.aclose()
        assert transports[0].closed

    async def test_unsupported_scheme(self) -> None:
        """Addresses no transport understands are ignored."""
        cache = IMCache(default_ttl_ms=0)
        try:
            cache.set("k", 1, remote_channel_address="ftp://example.com")
            assert cache.channel_state("ftp://example.com") == ChannelState.CLOSED
            assert cache.get("k") == 1
        finally:
            await cache.aclose()

    def test_no_event_loop(self, broker: InMemoryBroker) -> None:
        """Without a running loop the channel is skipped, not an error."""
        cache = IMCache(default_ttl_ms=0, transport_factory=broker.transport)
        cache.set("k", 1, remote_channel_address=ADDRESS)
        assert cache.channel_state(ADDRESS) == ChannelState.CLOSED
        assert cache.get("k") == 1


class TestRemoteInvalidation:
    """Test inbound invalidation messages."""

    async def test_plain_message_removes_key_and_dependents(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        remote_cache.set("a", 1, remote_channel_address=ADDRESS)
        remote_cache.set("b", 2, depends_on=["a"])
        remote_cache.set("c", 3)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        broker.publish(ADDRESS, InvalidationMessage.plain("a").to_bytes())
        await settle(remote_cache)

        assert remote_cache.get("a") is None
        assert remote_cache.get("b") is None
        assert remote_cache.get("c") == 3
        assert remote_cache.diagnostics.metrics.remote_invalidations == 1

    async def test_pattern_message(self, remote_cache: IMCache, broker: InMemoryBroker) -> None:
        remote_cache.set("user:1", 1, remote_channel_address=ADDRESS)
        remote_cache.set("user:2", 2)
        remote_cache.set("post:1", 3)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        broker.publish(ADDRESS, b'{"selectorKind": "pattern", "selector": "^user:"}')
        await settle(remote_cache)

        assert remote_cache.get("user:1") is None
        assert remote_cache.get("user:2") is None
        assert remote_cache.get("post:1") == 3

    async def test_malformed_message_is_dropped(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        """Malformed messages change nothing and leave the channel open."""
        remote_cache.set("a", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        for payload in [
            b"not json",
            b"[]",
            b'{"selectorKind": "glob", "selector": "a"}',
            b'{"selectorKind": "plain"}',
            b'{"selectorKind": "pattern", "selector": "("}',
            b'{"selectorKind": "pattern", "selector": "a{4294967296}"}',
            orjson.dumps({"selectorKind": "pattern", "selector": "(" * 2000 + ")" * 2000}),
        ]:
            broker.publish(ADDRESS, payload)
        await settle(remote_cache)

        assert remote_cache.get("a") == 1
        assert remote_cache.channel_state(ADDRESS) == ChannelState.OPEN
        assert remote_cache.channels.metrics.messages_dropped == 7

        broker.publish(ADDRESS, InvalidationMessage.plain("a").to_bytes())
        await settle(remote_cache)
        assert remote_cache.get("a") is None

    async def test_messages_apply_in_order(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        remote_cache.set("a", 1, remote_channel_address=ADDRESS)
        remote_cache.set("b", 2)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        broker.publish(ADDRESS, InvalidationMessage.plain("a").to_bytes())
        broker.publish(ADDRESS, InvalidationMessage.plain("b").to_bytes())
        await settle(remote_cache)

        assert len(remote_cache) == 0
        assert remote_cache.channels.metrics.messages_received == 2

    async def test_aclose_stops_channels(
        self, remote_cache: IMCache, broker: InMemoryBroker
    ) -> None:
        remote_cache.set("a", 1, remote_channel_address=ADDRESS)
        await wait_for_state(remote_cache, ADDRESS, ChannelState.OPEN)

        await remote_cache.aclose()
        assert remote_cache.channels.addresses == []
        assert broker.subscriber_count(ADDRESS) == 0


class TestChannelManager:
    """Test the manager on its own."""

    async def test_handler_errors_do_not_stop_consumer(self, broker: InMemoryBroker) -> None:
        """A failing handler is logged and later messages still apply."""
        applied: list[Selector] = []

        def handler(selector: Selector) -> None:
            if selector == Plain("boom"):
                raise RuntimeError("boom")
            applied.append(selector)

        manager = ChannelManager(handler, transport_factory=broker.transport)
        try:
            assert manager.ensure_channel(ADDRESS) is True
            assert manager.ensure_channel(ADDRESS) is False
            await asyncio.sleep(0.01)
            broker.publish(ADDRESS, InvalidationMessage.plain("boom").to_bytes())
            broker.publish(ADDRESS, InvalidationMessage.plain("ok").to_bytes())
            await asyncio.sleep(0.05)
            await manager.drain()
        finally:
            await manager.close()

        assert applied == [Plain("ok")]

    async def test_factory_error_counts_as_failure(self) -> None:
        def factory(address: str) -> Transport:
            raise TransportUnavailableError(address, "nope")

        manager = ChannelManager(lambda selector: None, transport_factory=factory)
        assert manager.ensure_channel(ADDRESS) is False
        assert manager.state(ADDRESS) == ChannelState.CLOSED
        assert manager.metrics.open_failures == 1
        await manager.close()

    async def test_full_queue_drops_messages(self, broker: InMemoryBroker) -> None:
        applied: list[Selector] = []
        manager = ChannelManager(applied.append, transport_factory=broker.transport, queue_size=1)
        try:
            manager.ensure_channel(ADDRESS)
            await asyncio.sleep(0.01)
            manager._consumer.cancel()  # type: ignore[union-attr]
            await asyncio.sleep(0)
            broker.publish(ADDRESS, InvalidationMessage.plain("a").to_bytes())
            broker.publish(ADDRESS, InvalidationMessage.plain("b").to_bytes())
            await asyncio.sleep(0.05)
            assert manager.pending_count == 1
            assert manager.metrics.messages_dropped == 1
        finally:
            await manager.close()

    async def test_unexpected_decode_error_keeps_channel_open(
        self, broker: InMemoryBroker, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Any decode failure drops the message instead of closing the channel."""

        def broken_decode(data: bytes) -> Selector:
            raise RuntimeError("decoder bug")

        monkeypatch.setattr("imcache.channels.decode_selector", broken_decode)
        manager = ChannelManager(lambda selector: None, transport_factory=broker.transport)
        try:
            manager.ensure_channel(ADDRESS)
            await asyncio.sleep(0.01)
            broker.publish(ADDRESS, InvalidationMessage.plain("a").to_bytes())
            await asyncio.sleep(0.05)

            assert manager.state(ADDRESS) == ChannelState.OPEN
            assert manager.metrics.messages_dropped == 1
        finally:
            await manager.close()

    async def test_close_releases_drain(self, broker: InMemoryBroker) -> None:
        """Invalidations still queued at close are discarded so drain() returns."""
        manager = ChannelManager(lambda selector: None, transport_factory=broker.transport)
        manager.ensure_channel(ADDRESS)
        await asyncio.sleep(0.01)
        manager._consumer.cancel()  # type: ignore[union-attr]
        await asyncio.sleep(0)
        broker.publish(ADDRESS, InvalidationMessage.plain("a").to_bytes())
        await asyncio.sleep(0.05)
        assert manager.pending_count == 1

        await manager.close()

        assert manager.pending_count == 0
        await asyncio.wait_for(manager.drain(), timeout=1.0)
