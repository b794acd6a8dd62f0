"""IMCache: in-process cache with expiry and dependency-aware invalidation.

Provides:
- Time-based expiry checked lazily on read
- Declared dependencies; removing a key removes everything depending on it
- Removal by logical key or regular expression
- Remote invalidation channels (Redis Pub/Sub) for external producers
"""

from imcache.cache import IMCache
from imcache.channels import ChannelManager, ChannelState
from imcache.config import Settings, settings
from imcache.entry import CacheEntry
from imcache.errors import IMCacheError, MalformedMessageError, TransportUnavailableError
from imcache.invalidation import InvalidationMessage, InvalidationPublisher, SelectorKind
from imcache.keys import CacheKeys, derive_key, hash32
from imcache.selectors import Pattern, Plain, Selector
from imcache.transport import (
    InMemoryBroker,
    InMemoryTransport,
    RedisPubSubTransport,
    Transport,
)

__version__ = "0.1.0"

__all__ = [
    # Core cache
    "IMCache",
    "CacheEntry",
    "CacheKeys",
    "derive_key",
    "hash32",
    # Selectors
    "Plain",
    "Pattern",
    "Selector",
    # Remote invalidation
    "ChannelManager",
    "ChannelState",
    "InvalidationMessage",
    "InvalidationPublisher",
    "SelectorKind",
    "Transport",
    "RedisPubSubTransport",
    "InMemoryBroker",
    "InMemoryTransport",
    # Errors
    "IMCacheError",
    "MalformedMessageError",
    "TransportUnavailableError",
    # Configuration
    "Settings",
    "settings",
    "__version__",
]
