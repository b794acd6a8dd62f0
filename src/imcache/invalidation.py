"""Remote invalidation messages.

External producers evict entries from running caches by publishing a small
JSON document on a channel the cache subscribed to when an entry was set
with a ``remote_channel_address``:

    {"selectorKind": "plain", "selector": "user:1"}
    {"selectorKind": "pattern", "selector": "^user:"}

Example:
    publisher = InvalidationPublisher()
    await publisher.invalidate_key("redis://localhost:6379/0#users", "user:1")
    await publisher.invalidate_pattern("redis://localhost:6379/0#users", "^user:")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, cast

import orjson

from imcache.errors import MalformedMessageError, TransportUnavailableError
from imcache.selectors import Pattern, Plain, Selector
from imcache.transport import parse_redis_address

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class SelectorKind(str, Enum):
    """How the ``selector`` field of a message is interpreted."""

    PLAIN = "plain"
    PATTERN = "pattern"


@dataclass(frozen=True)
class InvalidationMessage:
    """Cache invalidation request carried over a remote channel."""

    selector_kind: SelectorKind
    selector: str

    @classmethod
    def plain(cls, key: str) -> InvalidationMessage:
        return cls(selector_kind=SelectorKind.PLAIN, selector=key)

    @classmethod
    def pattern(cls, source: str) -> InvalidationMessage:
        return cls(selector_kind=SelectorKind.PATTERN, selector=source)

    def to_bytes(self) -> bytes:
        """Serialize to JSON bytes."""
        return orjson.dumps(
            {
                "selectorKind": self.selector_kind.value,
                "selector": self.selector,
            }
        )

    @classmethod
    def from_bytes(cls, data: bytes | str) -> InvalidationMessage:
        """Deserialize from JSON bytes.

        Raises:
            MalformedMessageError: If the payload is not a valid message.
        """
        try:
            parsed: Any = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise MalformedMessageError(f"Invalid JSON: {e}") from e

        if not isinstance(parsed, dict):
            raise MalformedMessageError("Message must be a JSON object")

        selector = parsed.get("selector")
        if not isinstance(selector, str):
            raise MalformedMessageError("Field 'selector' must be a string")

        try:
            kind = SelectorKind(parsed.get("selectorKind"))
        except ValueError as e:
            raise MalformedMessageError(
                f"Unknown selectorKind: {parsed.get('selectorKind')!r}"
            ) from e

        return cls(selector_kind=kind, selector=selector)

    def to_selector(self) -> Selector:
        """Build the local selector this message asks to remove.

        Raises:
            MalformedMessageError: If a pattern selector does not compile.
        """
        if self.selector_kind == SelectorKind.PLAIN:
            return Plain(self.selector)
        try:
            return Pattern.compile(self.selector)
        except (re.error, OverflowError, RecursionError) as e:
            raise MalformedMessageError(f"Invalid pattern {self.selector!r}: {e}") from e


def decode_selector(data: bytes | str) -> Selector:
    """Decode a raw channel payload straight into a selector."""
    return InvalidationMessage.from_bytes(data).to_selector()


class InvalidationPublisher:
    """Publishes invalidation messages to Redis-backed channels.

    One Redis client is kept per server URL; channels on the same server
    share it.
    """

    def __init__(self) -> None:
        self._clients: dict[str, Redis] = {}

    def _get_client(self, url: str) -> Redis:
        client = self._clients.get(url)
        if client is None:
            import redis.asyncio as redis

            client = redis.from_url(url)  # type: ignore[no-untyped-call]
            self._clients[url] = client
        return client

    async def publish(self, address: str, message: InvalidationMessage) -> int:
        """Publish a message to the channel at ``address``.

        Returns the number of subscribers that received the message.
        """
        url, channel = parse_redis_address(address)
        client = self._get_client(url)
        try:
            count = cast(int, await client.publish(channel, message.to_bytes()))
        except Exception as e:
            raise TransportUnavailableError(address, str(e)) from e
        logger.debug(
            f"Published invalidation {message.selector_kind.value} {message.selector!r} "
            f"to {count} subscribers"
        )
        return count

    async def invalidate_key(self, address: str, key: str) -> int:
        """Invalidate a single logical key (and its dependents)."""
        return await self.publish(address, InvalidationMessage.plain(key))

    async def invalidate_pattern(self, address: str, source: str) -> int:
        """Invalidate every logical key matching a regular expression."""
        return await self.publish(address, InvalidationMessage.pattern(source))

    async def close(self) -> None:
        """Close Redis connections."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
