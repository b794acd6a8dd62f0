"""Diagnostics for IMCache instances.

Tracks the approximate footprint of the entry set (recomputed after every
mutation) and simple operation counters.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from imcache.sizing import estimate_bytes, format_byte_size

if TYPE_CHECKING:
    from imcache.entry import CacheEntry

logger = logging.getLogger(__name__)


@dataclass
class CacheMetrics:
    """Counters for cache operations."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    updates: int = 0
    removals: int = 0
    expirations: int = 0
    remote_invalidations: int = 0
    malformed_messages: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Export metrics as dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "updates": self.updates,
            "removals": self.removals,
            "expirations": self.expirations,
            "remote_invalidations": self.remote_invalidations,
            "malformed_messages": self.malformed_messages,
        }


class Diagnostics:
    """Approximate memory footprint of a cache's entry set."""

    def __init__(self) -> None:
        self.metrics = CacheMetrics()
        self._bytes = 0
        self._entries = 0
        self._size = format_byte_size(0)

    @property
    def approximate_size(self) -> str:
        return self._size

    @property
    def approximate_bytes(self) -> int:
        return self._bytes

    @property
    def entry_count(self) -> int:
        return self._entries

    def recompute(self, entries: Mapping[str, CacheEntry]) -> None:
        """Re-estimate the footprint from the current entry mapping."""
        snapshot = {internal_key: entry.to_dict() for internal_key, entry in entries.items()}
        self._bytes = estimate_bytes(snapshot)
        self._entries = len(entries)
        self._size = format_byte_size(self._bytes)
        logger.debug(f"Cache size recomputed: {self._entries} entries, {self._size}")

    def reset(self) -> None:
        """Return to the empty-store state. Counters are kept."""
        self._bytes = 0
        self._entries = 0
        self._size = format_byte_size(0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": self._entries,
            "bytes": self._bytes,
            "size": self._size,
            **self.metrics.to_dict(),
        }
