"""In-process key/value cache with expiry and dependency invalidation.

Entries live in a plain dict keyed by a hashed internal key. Removal always
goes through the dependency resolver, so removing a key also removes every
entry that declared it (directly or transitively) as a dependency.

Example:
    cache = IMCache()
    cache.set("user:1", {"name": "Ada"}, ttl_ms=60_000)
    cache.set("profile:1", {"bio": "..."}, depends_on=["user:1"])

    cache.remove("user:1")
    assert cache.get("profile:1") is None

Entries set with a ``remote_channel_address`` subscribe the cache to that
address; invalidation messages published there remove entries the same way
``remove`` does. Remote channels need a running asyncio event loop.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from imcache.channels import ChannelManager, ChannelState
from imcache.config import settings
from imcache.diagnostics import Diagnostics
from imcache.entry import CacheEntry, now_ms
from imcache.keys import CacheKeys
from imcache.observability.logging import LogContext
from imcache.resolver import DependencyResolver, normalize_dependencies
from imcache.selectors import Plain, Selector, SelectorLike
from imcache.transport import TransportFactory

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class IMCache:
    """Dependency-aware in-memory cache.

    Args:
        namespace: Optional string hashed into every internal key
        default_ttl_ms: TTL applied when ``set`` is called without one
            (0 means entries never expire)
        cascade_on_expiry: Remove dependents when an entry is found expired
        transport_factory: Builds transports for remote channel addresses
        clock: Returns the current time in milliseconds
    """

    def __init__(
        self,
        namespace: str | None = None,
        default_ttl_ms: int | None = None,
        cascade_on_expiry: bool | None = None,
        transport_factory: TransportFactory | None = None,
        clock: Clock | None = None,
        key_prefix: str | None = None,
    ):
        self.namespace = namespace
        self.default_ttl_ms = (
            settings.default_ttl_ms if default_ttl_ms is None else default_ttl_ms
        )
        self.cascade_on_expiry = (
            settings.cascade_on_expiry if cascade_on_expiry is None else cascade_on_expiry
        )
        self.key_prefix = key_prefix or settings.key_prefix
        self._clock = clock or now_ms
        self._entries: dict[str, CacheEntry] = {}
        self._resolver = DependencyResolver(self.derive_key)
        self.diagnostics = Diagnostics()
        self.channels = ChannelManager(
            self._apply_remote,
            transport_factory=transport_factory,
            queue_size=settings.channel_queue_size,
        )

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def derive_key(self, logical_key: str) -> str:
        """Internal storage key for ``logical_key``."""
        return CacheKeys.derive(logical_key, self.namespace, self.key_prefix)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Any:
        """Return the cached value, or None if missing or expired.

        An expired entry is removed before returning.
        """
        entry = self._live_entry(key)
        if entry is None:
            self.diagnostics.metrics.misses += 1
            return None
        self.diagnostics.metrics.hits += 1
        return entry.value

    def contains(self, key: str) -> bool:
        """True if a live entry exists for ``key``."""
        return self._live_entry(key) is not None

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.contains(key)

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, key: str) -> CacheEntry | None:
        """Return the stored record for ``key`` without checking expiry."""
        return self._entries.get(self.derive_key(key))

    def keys(self) -> Iterator[str]:
        """Logical keys of every stored entry."""
        return iter([entry.logical_key for entry in self._entries.values()])

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: Any,
        *,
        ttl_ms: int | None = None,
        depends_on: Iterable[SelectorLike] | None = None,
        remote_channel_address: str | None = None,
    ) -> CacheEntry:
        """Store ``value`` under ``key``, replacing any existing entry.

        Args:
            key: Logical key
            value: Any payload
            ttl_ms: Lifetime in milliseconds; None uses the cache default,
                0 never expires
            depends_on: Keys or patterns this entry depends on; removing any
                of them removes this entry too
            remote_channel_address: Address of a remote invalidation channel
                to subscribe to
        """
        if ttl_ms is None:
            ttl_ms = self.default_ttl_ms
        if ttl_ms < 0:
            raise ValueError(f"ttl_ms must be non-negative, got {ttl_ms}")

        internal_key = self.derive_key(key)
        entry = CacheEntry(
            logical_key=key,
            internal_key=internal_key,
            value=value,
            created_at=self._clock(),
            ttl_ms=ttl_ms or None,
            depends_on=normalize_dependencies(depends_on),
            remote_channel_address=remote_channel_address,
        )
        self._entries[internal_key] = entry
        self.diagnostics.metrics.sets += 1
        self.diagnostics.recompute(self._entries)

        if remote_channel_address:
            self.channels.ensure_channel(remote_channel_address)
        return entry

    def update(self, key: str, value: Any) -> bool:
        """Replace the value of an existing live entry.

        Expiry, creation time and dependencies are unchanged; the entry is
        marked dirty. Returns False (and changes nothing) if there is no live
        entry for ``key``.
        """
        entry = self._live_entry(key)
        if entry is None:
            return False
        entry.replace_value(value)
        self.diagnostics.metrics.updates += 1
        self.diagnostics.recompute(self._entries)
        return True

    def remove(self, selector: SelectorLike) -> int:
        """Remove the selected entries and everything depending on them.

        ``selector`` is a logical key, a compiled regular expression, or a
        :class:`Plain` / :class:`Pattern` selector. Returns the number of
        entries removed.
        """
        keys = self._resolver.resolve(self._entries, selector)
        for internal_key in keys:
            del self._entries[internal_key]
        self.diagnostics.metrics.removals += len(keys)
        self.diagnostics.recompute(self._entries)
        if keys:
            logger.debug(f"Removed {len(keys)} cache entries")
        return len(keys)

    def clear(self) -> None:
        """Remove every entry and reset size diagnostics."""
        self._entries = {}
        self.diagnostics.reset()

    def purge_expired(self) -> int:
        """Remove every expired entry now instead of waiting for a ``get``.

        Returns the number of entries removed, dependents included.
        """
        now = self._clock()
        expired = [entry.logical_key for entry in self._entries.values() if not entry.is_live(now)]
        removed = 0
        for logical_key in expired:
            if self.derive_key(logical_key) in self._entries:
                removed += self._expire(logical_key)
        return removed

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    @property
    def approximate_size(self) -> str:
        """Human-readable estimate of the entry set's memory footprint."""
        return self.diagnostics.approximate_size

    def get_approximate_size(self) -> str:
        return self.approximate_size

    def stats(self) -> dict[str, Any]:
        """Size, counters and remote channel states in one dictionary."""
        return {
            **self.diagnostics.to_dict(),
            "channels": {
                address: self.channels.state(address).value for address in self.channels.addresses
            },
            "channel_metrics": self.channels.metrics.to_dict(),
        }

    # -------------------------------------------------------------------------
    # Remote channels
    # -------------------------------------------------------------------------

    def channel_state(self, address: str) -> ChannelState:
        return self.channels.state(address)

    async def aclose(self) -> None:
        """Close all remote invalidation channels."""
        await self.channels.close()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(self.derive_key(key))
        if entry is None:
            return None
        if entry.is_live(self._clock()):
            return entry
        self._expire(key)
        return None

    def _expire(self, key: str) -> int:
        self.diagnostics.metrics.expirations += 1
        if self.cascade_on_expiry:
            return self.remove(Plain(key))

        del self._entries[self.derive_key(key)]
        self.diagnostics.metrics.removals += 1
        self.diagnostics.recompute(self._entries)
        return 1

    def _apply_remote(self, selector: Selector) -> None:
        with LogContext(namespace=self.namespace or ""):
            removed = self.remove(selector)
            self.diagnostics.metrics.remote_invalidations += 1
            logger.debug(f"Remote invalidation removed {removed} entries")
